"""
Request/response transcoding between OpenAI-style clients and the upstream.

Outbound, a client request is rewritten into the upstream dialect: mapped
model name, history trimmed to the token budget, generation defaults and
the "thinking" chat-template switch. Inbound, streamed replies are piped
through EventReframer -> StreamNormalizer -> SSE frames as they arrive,
while complete replies are reshaped and normalized in one pass.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterable, Iterable, Iterator
from contextlib import aclosing, contextmanager
from typing import TYPE_CHECKING, Any

import httpx
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.responses import Response

from history import WindowResult, window_history
from normalizer import (
    DEFAULT_LEAD_INS,
    LeadInPattern,
    StreamNormalizer,
    compile_lead_ins,
    strip_lead_ins,
)
from reframer import EventKind, EventReframer, ProtocolEvent, iter_events

if TYPE_CHECKING:
    from nimbridge import ProxyConfig, ProxyStats

logger = logging.getLogger(__name__)

# Optional generation parameters forwarded upstream when the client sets them
SAMPLING_PARAMS = (
    "top_p",
    "top_k",
    "min_p",
    "presence_penalty",
    "frequency_penalty",
    "repetition_penalty",
    "seed",
    "stop",
    "n",
)


# =============================================================================
# Errors
# =============================================================================


class UpstreamError(Exception):
    """
    The upstream call failed before any response data reached the client.

    kind is one of: upstream_timeout, upstream_unavailable, upstream_error,
    upstream_invalid_response.
    """

    def __init__(self, kind: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def http_status(self) -> int:
        return self.status_code or 500

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.kind,
                "code": self.http_status,
            }
        }


@contextmanager
def upstream_errors(timeout: float) -> Iterator[None]:
    """Map httpx transport failures onto UpstreamError."""
    try:
        yield
    except httpx.TimeoutException as e:
        raise UpstreamError(
            "upstream_timeout", f"Upstream did not respond within {timeout}s"
        ) from e
    except httpx.HTTPError as e:
        raise UpstreamError(
            "upstream_unavailable", f"Upstream request failed: {e}"
        ) from e


def _error_detail(raw: bytes) -> str:
    """Best-effort message from an upstream error body."""
    text = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text[:500]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("detail"):
            return str(data["detail"])
    return text[:500]


# =============================================================================
# Outbound Request
# =============================================================================


def map_model(requested: str | None, mapping: dict[str, str], default: str) -> str:
    """Translate a public model id into the upstream's, falling back to default."""
    if requested and requested in mapping:
        return mapping[requested]
    return default


def build_upstream_request(
    body: dict[str, Any], config: ProxyConfig
) -> tuple[dict[str, Any], WindowResult]:
    """Build the upstream request body from a client request."""
    window = window_history(body.get("messages"), config.token_budget)

    temperature = body.get("temperature")
    max_tokens = body.get("max_tokens")

    request: dict[str, Any] = {
        "model": map_model(body.get("model"), config.model_mapping, config.default_model),
        "messages": window.messages,
        "temperature": config.default_temperature if temperature is None else temperature,
        "max_tokens": config.default_max_tokens if max_tokens is None else max_tokens,
        "stream": bool(body.get("stream")),
    }

    for param in SAMPLING_PARAMS:
        if body.get(param) is not None:
            request[param] = body[param]

    if config.thinking_mode:
        template_kwargs = body.get("chat_template_kwargs") or {}
        request["chat_template_kwargs"] = {**template_kwargs, "thinking": True}

    return request, window


# =============================================================================
# Streaming Replies
# =============================================================================


class StreamRelay:
    """
    Per-stream normalization of decoded events into SSE frames.

    Each choice index gets its own StreamNormalizer. Content absorbed while a
    normalizer is still accumulating is removed from its event, and events
    left with nothing to say are dropped. A finish_reason or the [DONE]
    sentinel flushes whatever is still buffered before it is forwarded.
    """

    def __init__(
        self,
        lead_ins: Iterable[LeadInPattern] = DEFAULT_LEAD_INS,
        min_chars: int = 40,
    ):
        self.lead_ins = tuple(lead_ins)
        self.min_chars = min_chars
        self._normalizers: dict[int, StreamNormalizer] = {}
        self._templates: dict[int, dict[str, Any]] = {}  # Envelope for flush frames

    @property
    def stripped(self) -> bool:
        return any(n.stripped for n in self._normalizers.values())

    def process(self, event: ProtocolEvent) -> list[str]:
        """Return the SSE frames to write for one event, in order."""
        if event.kind is EventKind.DONE:
            return self.flush() + [event.to_sse()]
        if event.kind is EventKind.RAW:
            return [event.to_sse()]

        payload = event.payload or {}
        choices = payload.get("choices")
        if not isinstance(choices, list):
            return [event.to_sse()]

        frames: list[str] = []
        absorbed = False

        for choice in choices:
            if not isinstance(choice, dict):
                continue
            index = choice.get("index", 0)
            if not isinstance(index, int):
                index = 0

            if index not in self._normalizers:
                self._normalizers[index] = StreamNormalizer(self.lead_ins, self.min_chars)
            normalizer = self._normalizers[index]
            if not normalizer.accumulating:
                continue

            delta = choice.get("delta")
            content = delta.get("content") if isinstance(delta, dict) else None

            if isinstance(content, str) and content:
                self._templates[index] = {
                    k: v for k, v in payload.items() if k not in ("choices", "usage")
                }
                released = normalizer.push(content)
                if released is None and choice.get("finish_reason"):
                    released = normalizer.finish() or ""
                if released is None:
                    del delta["content"]
                    absorbed = True
                else:
                    delta["content"] = released
            elif choice.get("finish_reason"):
                frames.extend(self._flush_choice(index))

        if absorbed and self._is_empty(payload):
            return frames

        frames.append(event.to_sse())
        return frames

    def flush(self) -> list[str]:
        """Release every choice that is still accumulating."""
        frames: list[str] = []
        for index in sorted(self._normalizers):
            frames.extend(self._flush_choice(index))
        return frames

    def _flush_choice(self, index: int) -> list[str]:
        normalizer = self._normalizers.get(index)
        if normalizer is None:
            return []
        cleaned = normalizer.finish()
        if cleaned is None:
            return []

        payload = dict(self._templates.get(index, {}))
        payload["choices"] = [
            {"index": index, "delta": {"content": cleaned}, "finish_reason": None}
        ]
        return [ProtocolEvent(kind=EventKind.DATA, payload=payload).to_sse()]

    @staticmethod
    def _is_empty(payload: dict[str, Any]) -> bool:
        if payload.get("usage"):
            return False
        for choice in payload.get("choices") or []:
            if not isinstance(choice, dict):
                return False
            if choice.get("delta") or choice.get("finish_reason"):
                return False
        return True


async def transcode_stream(
    chunks: AsyncIterable[bytes],
    relay: StreamRelay,
    show_reasoning: bool = False,
) -> AsyncGenerator[str, None]:
    """
    Pipe raw upstream bytes through the reframer and relay as SSE frames.

    [DONE] is written once, and only if the upstream sent it. If the
    transport ends without it, buffered content is flushed and the stream
    simply ends.
    """
    reframer = EventReframer(show_reasoning=show_reasoning)

    async with aclosing(iter_events(chunks, reframer)) as events:
        async for event in events:
            for frame in relay.process(event):
                yield frame

    if not reframer.done:
        for frame in relay.flush():
            yield frame


# =============================================================================
# Complete Replies
# =============================================================================


def build_client_response(
    upstream: dict[str, Any],
    requested_model: str | None,
    lead_ins: Iterable[LeadInPattern] = DEFAULT_LEAD_INS,
    show_reasoning: bool = False,
) -> tuple[dict[str, Any], bool]:
    """
    Reshape a complete upstream reply for the client.

    Returns the response body and whether any lead-in was stripped.
    """
    choices = upstream.get("choices")
    if not isinstance(choices, list):
        raise UpstreamError(
            "upstream_invalid_response", "Upstream response did not contain choices"
        )

    lead_ins = tuple(lead_ins)
    normalized = False
    client_choices = []

    for position, choice in enumerate(choices):
        if not isinstance(choice, dict):
            continue
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise UpstreamError(
                "upstream_invalid_response",
                f"Upstream choice {position} has a malformed message",
            )
        content = message.get("content")
        cleaned = strip_lead_ins(content, lead_ins)
        if cleaned != content:
            normalized = True

        reasoning = message.get("reasoning_content")
        if show_reasoning and reasoning:
            cleaned = f"<think>\n{reasoning}\n</think>\n\n{cleaned or ''}"

        client_message: dict[str, Any] = {
            "role": message.get("role", "assistant"),
            "content": cleaned,
        }
        if message.get("tool_calls"):
            client_message["tool_calls"] = message["tool_calls"]

        client_choices.append(
            {
                "index": choice.get("index", position),
                "message": client_message,
                "finish_reason": choice.get("finish_reason"),
            }
        )

    response = {
        "id": f"chatcmpl-{int(time.time() * 1000)}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": requested_model,
        "choices": client_choices,
        "usage": upstream.get("usage")
        or {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }
    return response, normalized


# =============================================================================
# Orchestrator
# =============================================================================


class Transcoder:
    """
    Handles one chat completion request end to end.

    Holds no per-request state: every request gets its own window, relay and
    reframer, and the upstream response is closed on every exit path.
    """

    def __init__(
        self,
        config: ProxyConfig,
        client: httpx.AsyncClient,
        stats: ProxyStats | None = None,
        lead_ins: Iterable[LeadInPattern] | None = None,
    ):
        self.config = config
        self.client = client
        self.stats = stats
        if lead_ins is None:
            lead_ins = compile_lead_ins(config.lead_in_patterns)
        self.lead_ins = tuple(lead_ins)

    @property
    def completions_url(self) -> str:
        return f"{self.config.upstream_base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def handle(self, body: dict[str, Any]) -> Response:
        """Transcode one request; returns the response to send to the client."""
        request_id = uuid.uuid4().hex[:8]
        upstream_body, window = build_upstream_request(body, self.config)
        requested_model = body.get("model")
        is_streaming = upstream_body["stream"]

        if self.stats is not None:
            self.stats.record_request(streaming=is_streaming, trimmed=window.dropped > 0)

        logger.info(
            f"[{request_id}] Request: model={requested_model} -> {upstream_body['model']}, "
            f"streaming={is_streaming}, messages={window.kept}/{window.kept + window.dropped} "
            f"(~{window.tokens} tokens)"
        )
        if window.dropped:
            logger.info(
                f"[{request_id}] Trimmed {window.dropped} older message(s) "
                f"to fit budget of {self.config.token_budget} tokens"
            )

        try:
            if is_streaming:
                return await self._handle_streaming(upstream_body, request_id)
            return await self._handle_non_streaming(
                upstream_body, requested_model, request_id
            )
        except UpstreamError as e:
            logger.error(f"[{request_id}] Proxy error ({e.kind}): {e.message}")
            if self.stats is not None:
                self.stats.record_backend_error()
            return JSONResponse(status_code=e.http_status, content=e.to_dict())

    async def _send(self, upstream_body: dict[str, Any]) -> httpx.Response:
        """Open the upstream call. The caller owns (and must close) the response."""
        timeout = self.config.upstream_timeout
        request = self.client.build_request(
            "POST",
            self.completions_url,
            json=upstream_body,
            headers=self._headers(),
            timeout=timeout,
        )

        with upstream_errors(timeout):
            response = await self.client.send(request, stream=True)
            if response.status_code >= 400:
                try:
                    error_body = await response.aread()
                finally:
                    await response.aclose()
                raise UpstreamError(
                    "upstream_error",
                    f"Upstream returned {response.status_code}: {_error_detail(error_body)}",
                    status_code=response.status_code,
                )

        return response

    async def _handle_non_streaming(
        self,
        upstream_body: dict[str, Any],
        requested_model: str | None,
        request_id: str,
    ) -> Response:
        response = await self._send(upstream_body)
        try:
            with upstream_errors(self.config.upstream_timeout):
                await response.aread()
        finally:
            await response.aclose()

        try:
            result = response.json()
        except ValueError as e:
            raise UpstreamError(
                "upstream_invalid_response", f"Upstream returned invalid JSON: {e}"
            ) from e
        if not isinstance(result, dict):
            raise UpstreamError(
                "upstream_invalid_response", "Upstream returned a non-object JSON body"
            )

        client_response, normalized = build_client_response(
            result,
            requested_model,
            lead_ins=self.lead_ins,
            show_reasoning=self.config.show_reasoning,
        )
        if normalized:
            logger.info(f"[{request_id}] Stripped lead-in phrase(s) from reply")
            if self.stats is not None:
                self.stats.record_normalized()

        usage = client_response["usage"]
        logger.info(
            f"[{request_id}] Request complete: "
            f"prompt_tokens={usage.get('prompt_tokens', 0)}, "
            f"completion_tokens={usage.get('completion_tokens', 0)}"
        )
        return JSONResponse(content=client_response)

    async def _handle_streaming(
        self, upstream_body: dict[str, Any], request_id: str
    ) -> Response:
        upstream = await self._send(upstream_body)
        relay = StreamRelay(self.lead_ins, self.config.normalizer_min_chars)

        return StreamingResponse(
            self._relay_stream(upstream, relay, request_id),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
                "X-NIMBridge-Request": request_id,
            },
        )

    async def _relay_stream(
        self, upstream: httpx.Response, relay: StreamRelay, request_id: str
    ) -> AsyncGenerator[str, None]:
        frames = 0
        try:
            async for frame in transcode_stream(
                upstream.aiter_bytes(), relay, show_reasoning=self.config.show_reasoning
            ):
                frames += 1
                yield frame
        except httpx.HTTPError as e:
            # Partial data already sent; end the stream without an error frame
            logger.error(f"[{request_id}] Stream error after {frames} frame(s): {e}")
            if self.stats is not None:
                self.stats.record_backend_error()
        finally:
            await upstream.aclose()

        if relay.stripped:
            logger.info(f"[{request_id}] Stripped lead-in phrase(s) from streamed reply")
            if self.stats is not None:
                self.stats.record_normalized()
        logger.info(f"[{request_id}] Stream complete: {frames} frame(s)")
