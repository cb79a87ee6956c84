"""
Model client for ``AsyncOpenAI`` and any OpenAI-compatible endpoint.

Provides :class:`OpenAIModelClient` with a one-shot ``complete_sync()`` and a
streaming ``complete()`` that yields :mod:`foreman.core.interfaces` response
events.  Rate-limited calls are retried with jittered exponential backoff;
anything else surfaces as :class:`ProviderError`.
"""

import asyncio
import logging
import random
from typing import Any, AsyncIterator, Optional

from openai import AsyncOpenAI

from foreman.core.interfaces import (
    CompletionRequest,
    CompletionResponse,
    Delta,
    Done,
    Reasoning,
    ResponseEvent,
    StreamError,
    StreamToolCall,
)
from foreman.core.messages import ToolCall, parse_arguments
from foreman.core.types import (
    ContextTooLargeError,
    ProviderConfig,
    ProviderError,
    RateLimitError,
    TokenUsage,
    classify_api_error,
)

logger = logging.getLogger(__name__)


def _usage(raw: Any) -> TokenUsage:
    if raw is None:
        return TokenUsage()
    prompt_details = getattr(raw, "prompt_tokens_details", None)
    completion_details = getattr(raw, "completion_tokens_details", None)
    return TokenUsage(
        input_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        output_tokens=getattr(raw, "completion_tokens", 0) or 0,
        cached_tokens=getattr(prompt_details, "cached_tokens", 0) or 0,
        reasoning_tokens=getattr(completion_details, "reasoning_tokens", 0) or 0,
    )


def openai_response_to_completion(raw: Any) -> CompletionResponse:
    """Convert an OpenAI ``ChatCompletion`` object to :class:`CompletionResponse`."""
    usage = _usage(getattr(raw, "usage", None))
    if not raw.choices:
        return CompletionResponse(usage=usage)

    message = raw.choices[0].message
    tool_calls = [
        ToolCall(id=tc.id, name=tc.function.name, arguments=parse_arguments(tc.function.arguments))
        for tc in (message.tool_calls or [])
    ]
    reasoning = getattr(message, "reasoning_content", None) or ""
    return CompletionResponse(
        text=message.content or "",
        tool_calls=tool_calls,
        usage=usage,
        reasoning=reasoning.strip(),
    )


class _ToolCallAssembler:
    """Accumulates streamed tool-call fragments by index."""

    def __init__(self) -> None:
        self._parts: dict[int, dict[str, str]] = {}

    def feed(self, fragment: Any) -> None:
        slot = self._parts.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
        if fragment.id:
            slot["id"] = fragment.id
        fn = getattr(fragment, "function", None)
        if fn is not None:
            if fn.name:
                slot["name"] += fn.name
            if fn.arguments:
                slot["arguments"] += fn.arguments

    def calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=p["id"] or f"call_{idx}", name=p["name"],
                     arguments=parse_arguments(p["arguments"]))
            for idx, p in sorted(self._parts.items())
            if p["name"]
        ]


class OpenAIModelClient:
    """Wraps ``AsyncOpenAI`` behind the engine's model-client interface."""

    RATE_LIMIT_MAX_RETRIES = 5
    RATE_LIMIT_INITIAL_BACKOFF = 2.0   # seconds
    RATE_LIMIT_MAX_BACKOFF = 60.0      # seconds

    def __init__(self, config: ProviderConfig, client: Optional[AsyncOpenAI] = None) -> None:
        self.config = config
        self._client = client or AsyncOpenAI(api_key=config.api_key or None,
                                             base_url=config.base_url or None)

    def _kwargs(self, request: CompletionRequest) -> dict:
        kwargs: dict = {
            "model": request.model or self.config.model,
            "messages": [m.to_dict() for m in request.messages],
        }
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = "auto"
        max_tok = request.max_tokens or self.config.max_tokens
        if self.config.reasoning:
            kwargs["max_completion_tokens"] = max_tok
        else:
            kwargs["max_tokens"] = max_tok
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        return kwargs

    async def _create(self, **kwargs: Any) -> Any:
        """``chat.completions.create`` with rate-limit retries."""
        backoff = self.RATE_LIMIT_INITIAL_BACKOFF
        for attempt in range(self.RATE_LIMIT_MAX_RETRIES + 1):
            try:
                return await self._client.chat.completions.create(**kwargs)
            except Exception as exc:  # noqa: BLE001
                error_cls = classify_api_error(exc)
                if error_cls is RateLimitError and attempt < self.RATE_LIMIT_MAX_RETRIES:
                    jitter = random.uniform(0, backoff * 0.5)
                    wait = min(backoff + jitter, self.RATE_LIMIT_MAX_BACKOFF)
                    logger.warning(
                        "Backend '%s' (%s) rate-limited, retrying in %.1fs (attempt %d/%d)",
                        self.config.name, kwargs.get("model"), wait,
                        attempt + 1, self.RATE_LIMIT_MAX_RETRIES,
                    )
                    await asyncio.sleep(wait)
                    backoff = min(backoff * 2, self.RATE_LIMIT_MAX_BACKOFF)
                    continue
                if error_cls is ContextTooLargeError:
                    raise ContextTooLargeError(str(exc)) from exc
                raise ProviderError(f"{type(exc).__name__}: {exc}") from exc
        raise ProviderError("rate limit retries exhausted")

    async def complete_sync(self, request: CompletionRequest) -> CompletionResponse:
        raw = await self._create(**self._kwargs(request))
        return openai_response_to_completion(raw)

    async def complete(self, request: CompletionRequest) -> AsyncIterator[ResponseEvent]:
        """Stream one completion.  Failures are yielded as :class:`StreamError`."""
        kwargs = self._kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        assembler = _ToolCallAssembler()
        usage = TokenUsage()
        try:
            stream = await self._create(**kwargs)
            async for chunk in stream:
                if getattr(chunk, "usage", None) is not None:
                    usage = _usage(chunk.usage)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield Reasoning(reasoning)
                if delta.content:
                    yield Delta(delta.content)
                for fragment in delta.tool_calls or []:
                    assembler.feed(fragment)
        except ProviderError as exc:
            yield StreamError(str(exc))
            return
        except Exception as exc:  # noqa: BLE001
            logger.warning("Stream from '%s' failed: %s", self.config.name, exc)
            yield StreamError(f"{type(exc).__name__}: {exc}")
            return

        calls = assembler.calls()
        for call in calls:
            yield StreamToolCall(call)
        yield Done(usage=usage, tool_calls=tuple(calls))
