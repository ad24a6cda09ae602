"""Tests for request building, stream relaying and reply reshaping."""

import asyncio
import json
from unittest.mock import patch

import pytest

from history import select_window
from nimbridge import ProxyConfig
from normalizer import StreamNormalizer
from reframer import EventKind, ProtocolEvent
from tokens import estimate_tokens
from transcoder import (
    StreamRelay,
    UpstreamError,
    build_client_response,
    build_upstream_request,
    map_model,
    transcode_stream,
)

DONE_FRAME = "data: [DONE]\n\n"


def _chunk(content: str | None = None, finish_reason: str | None = None, index: int = 0, **delta: str) -> dict:
    if content is not None:
        delta["content"] = content
    return {
        "id": "chatcmpl-up",
        "object": "chat.completion.chunk",
        "model": "org/model",
        "choices": [{"index": index, "delta": delta, "finish_reason": finish_reason}],
    }


def _sse(*payloads: dict, done: bool = True) -> bytes:
    text = "".join(f"data: {json.dumps(p)}\n\n" for p in payloads)
    if done:
        text += DONE_FRAME
    return text.encode("utf-8")


def _run(chunks: list[bytes], min_chars: int = 20, show_reasoning: bool = False) -> list[str]:
    async def source():
        for chunk in chunks:
            yield chunk

    async def collect():
        relay = StreamRelay(min_chars=min_chars)
        return [frame async for frame in transcode_stream(source(), relay, show_reasoning)]

    return asyncio.run(collect())


def _payloads(frames: list[str]) -> list[dict]:
    return [json.loads(f[len("data: "):]) for f in frames if f != DONE_FRAME]


def _content(frames: list[str], index: int = 0) -> str:
    text = ""
    for payload in _payloads(frames):
        for choice in payload["choices"]:
            if choice["index"] == index:
                text += choice["delta"].get("content") or ""
    return text


class TestUpstreamRequest:
    """Tests for building the outbound request."""

    @pytest.fixture
    def config(self) -> ProxyConfig:
        return ProxyConfig(token_budget=8000)

    def test_model_mapping_and_fallback(self) -> None:
        """Test known ids map and unknown ids fall back to the default."""
        mapping = {"gpt-4o": "deepseek-ai/deepseek-v3.1-terminus"}
        assert map_model("gpt-4o", mapping, "fallback") == "deepseek-ai/deepseek-v3.1-terminus"
        assert map_model("mystery", mapping, "fallback") == "fallback"
        assert map_model(None, mapping, "fallback") == "fallback"

    def test_defaults_and_extensions(self, config: ProxyConfig) -> None:
        """Test generation defaults and the thinking switch are applied."""
        body = {"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]}
        request, window = build_upstream_request(body, config)

        assert request["model"] == "deepseek-ai/deepseek-v3.1-terminus"
        assert request["temperature"] == 0.8
        assert request["max_tokens"] == 16384
        assert request["stream"] is False
        assert request["chat_template_kwargs"] == {"thinking": True}
        assert request["messages"] == body["messages"]
        assert window.dropped == 0

    def test_client_values_win(self, config: ProxyConfig) -> None:
        """Test explicit client parameters, including zero, are kept."""
        body = {
            "model": "gpt-4",
            "messages": [],
            "temperature": 0,
            "max_tokens": 64,
            "stream": True,
            "top_p": 0.5,
            "user": "someone",
            "chat_template_kwargs": {"enable_search": True},
        }
        request, _ = build_upstream_request(body, config)

        assert request["temperature"] == 0
        assert request["max_tokens"] == 64
        assert request["stream"] is True
        assert request["top_p"] == 0.5
        assert "user" not in request
        assert request["chat_template_kwargs"] == {"enable_search": True, "thinking": True}

    def test_thinking_disabled(self) -> None:
        """Test no template kwargs are sent with thinking mode off."""
        request, _ = build_upstream_request({"messages": []}, ProxyConfig(thinking_mode=False))
        assert "chat_template_kwargs" not in request

    def test_history_is_windowed(self) -> None:
        """Test messages are trimmed to the configured budget."""
        messages = [{"role": "user", "content": f"message {i} " * 20} for i in range(10)]
        budget = estimate_tokens(messages[-1]) * 3
        request, window = build_upstream_request(
            {"messages": messages}, ProxyConfig(token_budget=budget)
        )
        assert request["messages"] == select_window(messages, budget)
        assert window.dropped == 7


class TestStreamRelay:
    """Tests for the reframe -> normalize -> SSE pipeline."""

    def test_lead_in_stripped_from_stream(self) -> None:
        """Test chained lead-ins split across fragments are removed."""
        stream = _sse(
            _chunk("", role="assistant"),
            _chunk("Sure, "),
            _chunk("of course! "),
            _chunk("Here's the plan: step one, step two."),
            _chunk(" More text."),
            _chunk(finish_reason="stop"),
        )
        frames = _run([stream])

        assert _content(frames) == "the plan: step one, step two. More text."
        assert frames[-1] == DONE_FRAME
        assert frames.count(DONE_FRAME) == 1
        # Absorbed fragments don't leave empty events behind
        payloads = _payloads(frames)
        assert len(payloads) == 4
        assert payloads[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
        assert payloads[-1]["choices"][0]["finish_reason"] == "stop"

    def test_passthrough_content_untouched(self) -> None:
        """Test content after the threshold is never normalized."""
        stream = _sse(
            _chunk("This opening is long enough to pass the threshold. "),
            _chunk("Sure, "),
            _chunk("of course!"),
        )
        frames = _run([stream])
        assert _content(frames) == "This opening is long enough to pass the threshold. Sure, of course!"

    def test_short_reply_flushed_before_finish(self) -> None:
        """Test a reply under the threshold is released ahead of finish_reason."""
        stream = _sse(_chunk("Sure! "), _chunk("Done."), _chunk(finish_reason="stop"))
        frames = _run([stream], min_chars=100)
        payloads = _payloads(frames)

        assert [p["choices"][0]["delta"] for p in payloads] == [{"content": "Done."}, {}]
        assert payloads[0]["id"] == "chatcmpl-up"
        assert payloads[0]["choices"][0]["finish_reason"] is None
        assert payloads[1]["choices"][0]["finish_reason"] == "stop"
        assert frames[-1] == DONE_FRAME

    def test_content_with_finish_reason(self) -> None:
        """Test a final fragment carrying finish_reason is cleaned in place."""
        stream = _sse(_chunk("Of course. Ok.", finish_reason="stop"))
        frames = _run([stream], min_chars=100)
        payloads = _payloads(frames)

        assert len(payloads) == 1
        assert payloads[0]["choices"][0]["delta"] == {"content": "Ok."}
        assert payloads[0]["choices"][0]["finish_reason"] == "stop"

    def test_flush_on_done(self) -> None:
        """Test buffered content is flushed before the sentinel."""
        frames = _run([_sse(_chunk("Certainly! "), _chunk("Yes."))], min_chars=100)
        assert _content(frames) == "Yes."
        assert frames[-1] == DONE_FRAME

    def test_transport_end_without_done(self) -> None:
        """Test an upstream that just stops still gets its buffer flushed."""
        frames = _run([_sse(_chunk("Sure! Hi there"), done=False)], min_chars=100)
        assert _content(frames) == "Hi there"
        assert DONE_FRAME not in frames

    def test_nothing_after_done(self) -> None:
        """Test data after the sentinel is not forwarded."""
        stream = _sse(_chunk("A long enough first fragment for the threshold."))
        stream += _sse(_chunk("late"), done=False)
        frames = _run([stream])
        assert frames[-1] == DONE_FRAME
        assert "late" not in _content(frames)

    def test_chunk_boundaries_do_not_matter(self) -> None:
        """Test every two-way split of the stream gives identical output."""
        stream = _sse(
            _chunk("Sure, "),
            _chunk("here is what I found about the topic you asked."),
            _chunk(" Ünïcödé ✓"),
            _chunk(finish_reason="stop"),
        )
        expected = _run([stream])
        for split in range(1, len(stream), 7):
            assert _run([stream[:split], stream[split:]]) == expected

    def test_malformed_line_forwarded_in_order(self) -> None:
        """Test undecodable lines pass through between decoded events."""
        stream = (
            _sse(_chunk("First fragment that is long enough."), done=False)
            + b"data: {oops\n\n"
            + _sse(_chunk(" Second."))
        )
        frames = _run([stream])
        assert frames[1] == "data: {oops\n\n"
        assert _content(frames) == "First fragment that is long enough. Second."

    def test_reasoning_stripped(self) -> None:
        """Test reasoning deltas are emptied unless reasoning is shown."""
        stream = _sse(_chunk(reasoning_content="hmm"), _chunk("An answer that is long enough."))
        hidden = _payloads(_run([stream]))
        shown = _payloads(_run([stream], show_reasoning=True))

        assert "reasoning_content" not in hidden[0]["choices"][0]["delta"]
        assert shown[0]["choices"][0]["delta"]["reasoning_content"] == "hmm"

    def test_choices_normalized_independently(self) -> None:
        """Test each choice index has its own normalizer state."""
        stream = _sse(
            _chunk("Sure! Alpha reply is here.", index=0),
            _chunk("Of course. Beta reply.", index=1),
        )
        frames = _run([stream], min_chars=100)
        assert _content(frames, index=0) == "Alpha reply is here."
        assert _content(frames, index=1) == "Beta reply."

    def test_relay_reports_stripping(self) -> None:
        """Test the relay exposes whether any lead-in was removed."""
        relay = StreamRelay(min_chars=5)

        async def source():
            yield _sse(_chunk("Sure, hello world"))

        async def drain():
            return [f async for f in transcode_stream(source(), relay)]

        asyncio.run(drain())
        assert relay.stripped is True

    def test_one_normalizer_per_choice(self) -> None:
        """Test a choice's normalizer is created once and then reused."""
        relay = StreamRelay(min_chars=100)
        with patch("transcoder.StreamNormalizer", wraps=StreamNormalizer) as factory:
            for content in ["Sure, ", "one ", "two ", "three"]:
                relay.process(ProtocolEvent(kind=EventKind.DATA, payload=_chunk(content)))
            relay.process(ProtocolEvent(kind=EventKind.DATA, payload=_chunk("Hi", index=1)))

        assert factory.call_count == 2
        frames = relay.flush()
        assert _content(frames) == "one two three"
        assert _content(frames, index=1) == "Hi"


class TestClientResponse:
    """Tests for reshaping complete upstream replies."""

    def test_reshape_and_normalize(self) -> None:
        """Test choices are normalized and the client's model name is used."""
        upstream = {
            "id": "up-1",
            "model": "org/model",
            "choices": [
                {
                    "index": 0,
                    "message": {
                        "role": "assistant",
                        "content": "Sure, of course! Here's the plan: ...",
                        "reasoning_content": "secret",
                    },
                    "finish_reason": "stop",
                }
            ],
            "usage": {"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8},
        }
        response, normalized = build_client_response(upstream, "gpt-4o")

        assert normalized is True
        assert response["object"] == "chat.completion"
        assert response["id"].startswith("chatcmpl-")
        assert response["model"] == "gpt-4o"
        assert response["choices"][0] == {
            "index": 0,
            "message": {"role": "assistant", "content": "the plan: ..."},
            "finish_reason": "stop",
        }
        assert response["usage"]["total_tokens"] == 8

    def test_reasoning_wrapped_when_shown(self) -> None:
        """Test reasoning is prepended in think tags when enabled."""
        upstream = {
            "choices": [{"message": {"role": "assistant", "content": "42", "reasoning_content": "math"}}]
        }
        response, _ = build_client_response(upstream, "gpt-4", show_reasoning=True)
        assert response["choices"][0]["message"]["content"] == "<think>\nmath\n</think>\n\n42"

    def test_usage_defaults_and_null_content(self) -> None:
        """Test missing usage becomes zeros and null content survives."""
        upstream = {
            "choices": [
                {
                    "message": {"role": "assistant", "content": None, "tool_calls": [{"id": "c1"}]},
                    "finish_reason": "tool_calls",
                }
            ]
        }
        response, normalized = build_client_response(upstream, "gpt-4")

        assert normalized is False
        assert response["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
        message = response["choices"][0]["message"]
        assert message["content"] is None
        assert message["tool_calls"] == [{"id": "c1"}]

    def test_missing_choices_is_an_upstream_error(self) -> None:
        """Test a reply without choices raises UpstreamError."""
        with pytest.raises(UpstreamError) as exc_info:
            build_client_response({"object": "error"}, "gpt-4")
        assert exc_info.value.kind == "upstream_invalid_response"
        assert exc_info.value.http_status == 500

    def test_malformed_message_is_an_upstream_error(self) -> None:
        """Test a choice whose message isn't an object raises UpstreamError."""
        with pytest.raises(UpstreamError) as exc_info:
            build_client_response({"choices": [{"message": "hi"}]}, "gpt-4")
        assert exc_info.value.kind == "upstream_invalid_response"
        assert exc_info.value.http_status == 500
