#!/usr/bin/env python3
"""
NIMBridge - OpenAI to NVIDIA NIM streaming proxy

An OpenAI-compatible proxy that forwards chat completions to a NIM-style
upstream and rewrites the replies on the way back:

    client request                          upstream request
    model: gpt-4o                     →     model: deepseek-ai/deepseek-v3.1-terminus
    messages: [... 200 turns ...]           messages: [last turns within token budget]
                                            chat_template_kwargs: {thinking: true}

    upstream reply                          client reply
    "Sure, of course! Here's the plan"  →   "the plan"
    delta.reasoning_content: "..."          (stripped unless reasoning is shown)

Streaming replies are reframed and normalized while they arrive.
"""

import argparse
import json
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from normalizer import (
    DEFAULT_LEAD_IN_PATTERNS,
    LeadInPattern,
    compile_lead_ins,
    load_lead_in_catalog,
)
from paths import get_phrase_catalog_path
from transcoder import Transcoder

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "OpenAI → NVIDIA NIM Proxy"

# Public model id -> upstream model id
DEFAULT_MODEL_MAPPING: dict[str, str] = {
    "gpt-3.5-turbo": "meta/llama-3.3-70b-instruct",
    "gpt-4": "nvidia/llama-3.1-nemotron-70b-instruct",
    "gpt-4-turbo": "qwen/qwen2.5-72b-instruct",
    "gpt-4o": "deepseek-ai/deepseek-v3.1-terminus",
    "claude-3-opus": "meta/llama-3.1-405b-instruct",
    "claude-3-sonnet": "meta/llama-3.3-70b-instruct",
    "gemini-pro": "nvidia/llama-3.1-nemotron-ultra-253b-v1",
}

# =============================================================================
# Stats Tracking
# =============================================================================


@dataclass
class ProxyStats:
    """Track proxy statistics for observability"""

    total_requests: int = 0
    streamed_requests: int = 0
    trimmed_histories: int = 0  # History window dropped older messages
    normalized_replies: int = 0  # Lead-in phrases were stripped
    backend_errors: int = 0  # Upstream failed or timed out

    def record_request(self, streaming: bool, trimmed: bool) -> None:
        self.total_requests += 1
        if streaming:
            self.streamed_requests += 1
        if trimmed:
            self.trimmed_histories += 1

    def record_normalized(self) -> None:
        self.normalized_replies += 1

    def record_backend_error(self) -> None:
        self.backend_errors += 1

    def to_dict(self) -> dict[str, Any]:
        total = self.total_requests or 1  # Avoid division by zero
        return {
            "total_requests": self.total_requests,
            "streamed": {
                "count": self.streamed_requests,
                "percent": round(100 * self.streamed_requests / total, 1),
            },
            "trimmed_histories": {
                "count": self.trimmed_histories,
                "percent": round(100 * self.trimmed_histories / total, 1),
            },
            "normalized_replies": {
                "count": self.normalized_replies,
                "percent": round(100 * self.normalized_replies / total, 1),
            },
            "backend_errors": {
                "count": self.backend_errors,
                "percent": round(100 * self.backend_errors / total, 1),
            },
        }


# =============================================================================
# Configuration
# =============================================================================


class ProxyConfig(BaseSettings):
    """Proxy configuration settings.

    Configuration can be set via:
    1. CLI arguments (highest priority)
    2. Environment variables (NIMBRIDGE_<SETTING_NAME>)
    3. .env file in the working directory
    4. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="NIMBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Connection settings
    upstream_base_url: str = Field(
        default="https://integrate.api.nvidia.com/v1",
        description="Upstream NIM API base URL",
    )
    api_key: str | None = Field(
        default=None,
        description="Upstream API key (sent as a Bearer token)",
    )
    port: int = Field(
        default=3000,
        description="Port to listen on",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Host to bind to",
    )
    upstream_timeout: float = Field(
        default=300.0,
        description="Upstream call timeout in seconds (some models take minutes)",
    )

    # History windowing
    token_budget: int = Field(
        default=8000,
        description="Estimated token budget for forwarded conversation history",
    )

    # Reply normalization
    normalizer_min_chars: int = Field(
        default=40,
        description="Characters buffered before a streamed reply is normalized",
    )
    lead_in_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_LEAD_IN_PATTERNS),
        description="Start-anchored lead-in phrase patterns (case-insensitive)",
    )
    phrases_file: str | None = Field(
        default=None,
        description="JSON phrase catalog file (replaces lead_in_patterns when present)",
    )

    # Upstream extensions
    show_reasoning: bool = Field(
        default=False,
        description="Expose the model's reasoning trace to clients",
    )
    thinking_mode: bool = Field(
        default=True,
        description="Ask the upstream chat template for thinking mode",
    )

    # Generation defaults
    default_temperature: float = Field(
        default=0.8,
        description="Temperature when the client sends none",
    )
    default_max_tokens: int = Field(
        default=16384,
        description="max_tokens when the client sends none",
    )
    default_model: str = Field(
        default="meta/llama-3.1-70b-instruct",
        description="Upstream model for unknown model ids",
    )
    model_mapping: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_MODEL_MAPPING),
        description="Public model id to upstream model id",
    )

    # HTTP settings
    max_body_bytes: int = Field(
        default=100 * 1024 * 1024,
        description="Largest accepted request body in bytes",
    )
    cors_enabled: bool = Field(
        default=True,
        description="Enable CORS for all routes",
    )
    cors_origins: list[str] | None = Field(
        default=None,
        description="Allowed CORS origins (None = allow all '*')",
    )

    # Debug settings
    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )


def load_config() -> ProxyConfig:
    """Load configuration from environment variables and .env file."""
    return ProxyConfig()


def resolve_lead_ins(config: ProxyConfig) -> tuple[LeadInPattern, ...]:
    """Compile the phrase catalog, preferring a catalog file when one exists."""
    catalog_path = get_phrase_catalog_path(config.phrases_file)
    if catalog_path.is_file():
        return compile_lead_ins(load_lead_in_catalog(catalog_path))

    if config.phrases_file:
        logger.warning(
            f"Phrase catalog {catalog_path} not found, using configured patterns"
        )
    return compile_lead_ins(config.lead_in_patterns)


# =============================================================================
# Middleware
# =============================================================================


def error_response(status_code: int, message: str, kind: str | None = None) -> JSONResponse:
    error: dict[str, Any] = {"message": message, "code": status_code}
    if kind:
        error["type"] = kind
    return JSONResponse(status_code=status_code, content={"error": error})


class PayloadLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose declared body size exceeds the limit."""

    def __init__(self, app: Any, max_bytes: int):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit():
            size = int(content_length)
        else:
            # Chunked bodies declare no size; Starlette caches the body for the endpoint
            size = len(await request.body())

        if size > self.max_bytes:
            logger.warning(
                f"Rejected {request.url.path}: body of {size} bytes "
                f"exceeds {self.max_bytes}"
            )
            return error_response(
                413,
                f"Request body exceeds {self.max_bytes} bytes",
                "payload_too_large",
            )
        return await call_next(request)


# =============================================================================
# Application
# =============================================================================


def create_app(
    config: ProxyConfig,
    client: httpx.AsyncClient | None = None,
    lead_ins: tuple[LeadInPattern, ...] | None = None,
) -> FastAPI:
    """
    Build the proxy application.

    If no client is given, one is created on startup and closed on shutdown.
    """
    if lead_ins is None:
        lead_ins = resolve_lead_ins(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """FastAPI lifespan context manager for startup/shutdown tasks."""
        http_client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.upstream_timeout)
        )
        app.state.transcoder = Transcoder(
            config, http_client, stats=app.state.stats, lead_ins=lead_ins
        )

        yield  # App runs here

        if client is None:
            await http_client.aclose()

    app = FastAPI(title="NIMBridge", lifespan=lifespan)
    app.state.stats = ProxyStats()

    app.add_middleware(PayloadLimitMiddleware, max_bytes=config.max_body_bytes)
    if config.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins or ["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.post("/v1/chat/completions", response_model=None)
    async def chat_completions(request: Request) -> Response:
        """OpenAI-compatible chat completions, transcoded to the upstream."""
        try:
            body = await request.json()
        except ValueError:
            return error_response(400, "Request body is not valid JSON", "invalid_request_error")
        if not isinstance(body, dict):
            return error_response(400, "Request body must be a JSON object", "invalid_request_error")
        if body.get("messages") is not None and not isinstance(body["messages"], list):
            return error_response(400, "messages must be an array", "invalid_request_error")

        return await request.app.state.transcoder.handle(body)

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        """List the public model ids from the mapping table."""
        created = int(time.time())
        return {
            "object": "list",
            "data": [
                {"id": model_id, "object": "model", "created": created, "owned_by": "nimbridge"}
                for model_id in config.model_mapping
            ],
        }

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check."""
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "upstream_base_url": config.upstream_base_url,
            "reasoning_display": config.show_reasoning,
            "thinking_mode": config.thinking_mode,
        }

    @app.get("/stats")
    async def get_stats(request: Request) -> dict[str, Any]:
        """
        Get proxy statistics.

        Shows how many requests were:
        - streamed: Client asked for an event stream
        - trimmed_histories: Older messages were left out to fit the token budget
        - normalized_replies: Lead-in phrases were stripped from the reply
        - backend_errors: Upstream returned an error or timed out
        """
        return {"proxy_stats": request.app.state.stats.to_dict()}

    @app.post("/stats/reset")
    async def reset_stats(request: Request) -> dict[str, Any]:
        """Reset statistics counters."""
        stats = ProxyStats()
        request.app.state.stats = stats
        request.app.state.transcoder.stats = stats
        return {"status": "reset", "stats": stats.to_dict()}

    @app.get("/config")
    async def get_config() -> dict[str, Any]:
        """Get current proxy configuration (the API key is never shown)."""
        return {
            "upstream_base_url": config.upstream_base_url,
            "api_key_set": bool(config.api_key),
            "upstream_timeout": config.upstream_timeout,
            "token_budget": config.token_budget,
            "normalizer": {
                "min_chars": config.normalizer_min_chars,
                "lead_in_patterns": [lead_in.pattern.pattern for lead_in in lead_ins],
            },
            "show_reasoning": config.show_reasoning,
            "thinking_mode": config.thinking_mode,
            "defaults": {
                "temperature": config.default_temperature,
                "max_tokens": config.default_max_tokens,
                "model": config.default_model,
            },
            "model_mapping": config.model_mapping,
        }

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
    async def not_found(path: str) -> JSONResponse:
        """Any other endpoint is unknown."""
        return error_response(404, f"Endpoint /{path} not found")

    return app


# =============================================================================
# Main
# =============================================================================


def _env_help(env_var: str, description: str, default: str | None = None) -> str:
    """Format help text with environment variable name."""
    if default is not None:
        return f"{description} [env: {env_var}, default: {default}]"
    return f"{description} [env: {env_var}]"


def main() -> None:
    # Load config from environment variables / .env file first
    config = load_config()

    parser = argparse.ArgumentParser(
        description="NIMBridge - OpenAI to NVIDIA NIM streaming proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration Priority (highest to lowest):
  1. CLI arguments
  2. Environment variables (NIMBRIDGE_*)
  3. .env file in working directory
  4. Default values

Environment Variables:
  NIMBRIDGE_UPSTREAM_BASE_URL     Upstream API base URL
  NIMBRIDGE_API_KEY               Upstream API key
  NIMBRIDGE_PORT                  Port to listen on
  NIMBRIDGE_HOST                  Host to bind to
  NIMBRIDGE_UPSTREAM_TIMEOUT      Upstream timeout in seconds
  NIMBRIDGE_TOKEN_BUDGET          History token budget
  NIMBRIDGE_NORMALIZER_MIN_CHARS  Characters buffered before normalizing a stream
  NIMBRIDGE_LEAD_IN_PATTERNS      Lead-in patterns (as JSON list)
  NIMBRIDGE_PHRASES_FILE          Phrase catalog file
  NIMBRIDGE_SHOW_REASONING        Expose reasoning trace (true/false)
  NIMBRIDGE_THINKING_MODE         Request thinking mode (true/false)
  NIMBRIDGE_MODEL_MAPPING         Model mapping (as JSON object)
  NIMBRIDGE_CORS_ENABLED          Enable CORS (true/false)
  NIMBRIDGE_CORS_ORIGINS          Allowed origins (as JSON list)
  NIMBRIDGE_DEBUG                 Enable debug logging (true/false)

Examples:
  # Basic usage (reads from env vars / .env if available)
  python nimbridge.py

  # Different upstream and a smaller history window
  python nimbridge.py --upstream http://localhost:8000/v1 --token-budget 4000
""",
    )

    parser.add_argument(
        "--upstream",
        "-u",
        default=None,
        help=_env_help(
            "NIMBRIDGE_UPSTREAM_BASE_URL",
            "Upstream API base URL",
            "https://integrate.api.nvidia.com/v1",
        ),
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help=_env_help("NIMBRIDGE_PORT", "Port to listen on", "3000"),
    )
    parser.add_argument(
        "--host",
        default=None,
        help=_env_help("NIMBRIDGE_HOST", "Host to bind to", "0.0.0.0"),
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help=_env_help("NIMBRIDGE_UPSTREAM_TIMEOUT", "Upstream timeout in seconds", "300"),
    )

    transcoding = parser.add_argument_group("transcoding")
    transcoding.add_argument(
        "--token-budget",
        type=int,
        default=None,
        help=_env_help("NIMBRIDGE_TOKEN_BUDGET", "History token budget", "8000"),
    )
    transcoding.add_argument(
        "--min-chars",
        type=int,
        default=None,
        help=_env_help(
            "NIMBRIDGE_NORMALIZER_MIN_CHARS",
            "Characters buffered before a streamed reply is normalized",
            "40",
        ),
    )
    transcoding.add_argument(
        "--phrases-file",
        default=None,
        help=_env_help("NIMBRIDGE_PHRASES_FILE", "JSON lead-in phrase catalog"),
    )
    transcoding.add_argument(
        "--show-reasoning",
        action="store_true",
        help="Expose the reasoning trace to clients [env: NIMBRIDGE_SHOW_REASONING=true]",
    )
    transcoding.add_argument(
        "--no-thinking",
        action="store_true",
        help="Do not request thinking mode [env: NIMBRIDGE_THINKING_MODE=false]",
    )

    parser.add_argument(
        "--no-cors",
        action="store_true",
        help="Disable CORS [env: NIMBRIDGE_CORS_ENABLED=false]",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging [env: NIMBRIDGE_DEBUG=true]",
    )

    args = parser.parse_args()

    # Apply CLI overrides - only if explicitly provided (not None)
    if args.upstream is not None:
        config.upstream_base_url = args.upstream
    if args.port is not None:
        config.port = args.port
    if args.host is not None:
        config.host = args.host
    if args.timeout is not None:
        config.upstream_timeout = args.timeout
    if args.token_budget is not None:
        config.token_budget = args.token_budget
    if args.min_chars is not None:
        config.normalizer_min_chars = args.min_chars
    if args.phrases_file is not None:
        config.phrases_file = args.phrases_file

    # Boolean flags - CLI flags override env vars when explicitly set
    if args.show_reasoning:
        config.show_reasoning = True
    if args.no_thinking:
        config.thinking_mode = False
    if args.no_cors:
        config.cors_enabled = False
    if args.debug:
        config.debug = True

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    app = create_app(config)

    # Log startup configuration
    logger.info("Starting NIMBridge")
    logger.info(f"  Upstream: {config.upstream_base_url}")
    logger.info(f"  Listening: {config.host}:{config.port}")
    logger.info(f"  Upstream timeout: {config.upstream_timeout}s")
    logger.info(f"  Token budget: {config.token_budget}")
    logger.info(f"  Normalizer threshold: {config.normalizer_min_chars} chars")
    logger.info(f"  Thinking: {'enabled' if config.thinking_mode else 'disabled'}")
    logger.info(f"  Reasoning display: {'enabled' if config.show_reasoning else 'disabled'}")
    if config.cors_enabled:
        origins_display = ", ".join(config.cors_origins) if config.cors_origins else "*"
        logger.info(f"  CORS: enabled ({origins_display})")
    else:
        logger.info("  CORS: disabled")
    if not config.api_key:
        logger.warning("  No API key configured (NIMBRIDGE_API_KEY)")

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port, log_level="info")


if __name__ == "__main__":
    main()
