"""
Path resolution utilities for NIMBridge.

Follows the XDG Base Directory Specification (via platformdirs) to locate
user configuration such as the lead-in phrase catalog.
"""

import os
from functools import lru_cache
from pathlib import Path

import platformdirs

PHRASE_CATALOG_FILENAME = "lead_in_phrases.json"


@lru_cache(maxsize=1)
def get_config_home() -> Path:
    """
    Get the NIMBridge configuration directory.

    Resolution order:
    1. NIMBRIDGE_CONFIG_HOME environment variable (if set)
    2. platformdirs user_config_dir
       - Linux: ${XDG_CONFIG_HOME:-~/.config}/nimbridge
       - macOS: ~/Library/Application Support/nimbridge
       - Windows: %LOCALAPPDATA%/nimbridge

    Returns:
        Path to the config directory (may not exist)
    """
    env_config_home = os.environ.get("NIMBRIDGE_CONFIG_HOME")
    if env_config_home:
        return Path(env_config_home)

    return Path(platformdirs.user_config_dir("nimbridge"))


def get_phrase_catalog_path(override: str | None = None) -> Path:
    """
    Get the lead-in phrase catalog path.

    Resolution order:
    1. override parameter (from CLI --phrases-file or config)
    2. NIMBRIDGE_PHRASES_FILE environment variable
    3. ${NIMBRIDGE_CONFIG_HOME}/lead_in_phrases.json (default)
    """
    if override:
        return Path(override)

    env_phrases_file = os.environ.get("NIMBRIDGE_PHRASES_FILE")
    if env_phrases_file:
        return Path(env_phrases_file)

    return get_config_home() / PHRASE_CATALOG_FILENAME
