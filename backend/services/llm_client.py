"""
LLM Client - wraps the OpenAI SDK to talk to any OpenAI-compatible provider.

Claude models go through AnthropicClient instead (see get_llm_client), since
only the native Messages API honours cache breakpoints.

One client per turn, bound to a catalog model. stream_step() runs a single
chat-completions request and yields StepEvents:
    StepEvent(text="...")                      text delta
    StepEvent(tool_calls=[...], usage={...})   final event of the step

Key translations:
- Content parts: {"type":"file", media_type image/*} -> image_url parts
- Tool calls: streamed deltas assembled by index, arguments JSON-decoded
- Failures: openai / httpx errors -> ProviderError (never retried here)
"""

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx
import openai
from openai import AsyncOpenAI

from config import runtime_config
from errors import ProviderError
from logging_config import log_cache
from routers.chat_orchestration.turn import Content, ModelMessage, StepEvent, ToolCall
from services.anthropic_client import AnthropicClient
from services.cache_strategy import extract_cache_metrics
from services.llm_config import ModelSpec, ProviderKind, get_endpoint, resolve_model

logger = logging.getLogger(__name__)


def _translate_content(content: Content) -> Any:
    """Translate message content to chat-completions content."""
    if isinstance(content, str):
        return content

    parts: List[Dict[str, Any]] = []
    for part in content:
        kind = part.get("type")
        if kind == "text":
            parts.append({"type": "text", "text": part.get("text", "")})
        elif kind in ("file", "image"):
            url = part.get("url") or part.get("data") or ""
            media_type = part.get("media_type") or part.get("mediaType") or ""
            if kind == "image" or media_type.startswith("image/"):
                parts.append({"type": "image_url", "image_url": {"url": url}})
            else:
                # Non-image attachments are referenced, not inlined
                parts.append({"type": "text", "text": f"[Attached file: {part.get('name') or url}]"})

    return parts


def _translate_messages_for_openai(messages: List[ModelMessage]) -> List[Dict[str, Any]]:
    """Translate ModelMessages to OpenAI API format."""
    translated = []
    for msg in messages:
        if msg.role == "tool":
            translated.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id or "call_0",
                "content": msg.text,
            })
            continue

        new_msg: Dict[str, Any] = {"role": msg.role, "content": _translate_content(msg.content)}
        if msg.role == "assistant" and msg.tool_calls:
            new_msg["tool_calls"] = [call.to_wire() for call in msg.tool_calls]
            # OpenAI requires content to be None when tool_calls present
            if not msg.text:
                new_msg["content"] = None
        translated.append(new_msg)

    return translated


def _parse_arguments(raw: str, name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse tool call arguments for {name}: {raw[:200]}")
        return {}
    return args if isinstance(args, dict) else {}


def _usage_to_dict(usage: Any) -> Optional[Dict[str, Any]]:
    if usage is None:
        return None
    if isinstance(usage, dict):
        return usage
    return usage.model_dump()


class LLMClient:
    """Wraps AsyncOpenAI pointing at the provider for one catalog model."""

    def __init__(
        self,
        spec: ModelSpec,
        chat_id: str = "",
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Args:
            spec: Catalog entry for the selected model
            chat_id: Sent as the conversation id where the provider caches on it
            timeout: Request timeout in seconds (defaults to runtime config)
            temperature: Sampling temperature (defaults to runtime config)
            client: Pre-built SDK client, mainly for tests
        """
        self.spec = spec
        self.model = spec.upstream_model
        self.provider = spec.provider
        self.chat_id = chat_id
        self.temperature = runtime_config.llm_temperature if temperature is None else temperature

        if client is None:
            endpoint = get_endpoint(spec.provider)
            headers = {}
            if spec.provider == ProviderKind.XAI and chat_id:
                headers["x-grok-conv-id"] = chat_id
            client = AsyncOpenAI(
                base_url=endpoint.base_url,
                api_key=os.environ.get(endpoint.api_key_env) or "not-configured",
                timeout=timeout or runtime_config.llm_timeout,
                default_headers=headers or None,
            )
        self._openai = client

    async def stream_step(
        self,
        messages: List[ModelMessage],
        tools: Optional[List[Dict[str, Any]]] = None,
        extra_options: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[StepEvent]:
        """Stream one model step.

        Raises:
            ProviderError: network failure, HTTP error status, timeout or quota
        """
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": _translate_messages_for_openai(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": self.temperature,
        }
        if tools:
            kwargs["tools"] = tools
        if extra_options:
            kwargs["extra_body"] = dict(extra_options)

        pending: Dict[int, Dict[str, str]] = {}
        usage = None
        try:
            stream = await self._openai.chat.completions.create(**kwargs)
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = chunk.usage
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue

                if delta.content:
                    yield StepEvent(text=delta.content)

                for tc in delta.tool_calls or []:
                    slot = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function:
                        if tc.function.name and not slot["name"]:
                            slot["name"] = tc.function.name
                        if tc.function.arguments:
                            slot["arguments"] += tc.function.arguments
        except openai.APITimeoutError as e:
            raise ProviderError("Model provider timed out", details=str(e), model=self.model, error_type="timeout")
        except openai.RateLimitError as e:
            raise ProviderError(
                "Model provider rate limit reached", details=str(e), model=self.model, error_type="rate_limit"
            )
        except openai.APIStatusError as e:
            raise ProviderError(
                f"Model provider returned HTTP {e.status_code}", details=str(e), model=self.model
            )
        except (openai.APIError, httpx.HTTPError) as e:
            raise ProviderError("Model provider request failed", details=str(e), model=self.model)

        calls = [
            ToolCall(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                arguments=_parse_arguments(slot["arguments"], slot["name"]),
            )
            for index, slot in sorted(pending.items())
        ]

        usage_dict = _usage_to_dict(usage)
        log_cache(logger, self.provider.value, extract_cache_metrics(self.provider, usage_dict))

        yield StepEvent(tool_calls=calls or None, usage=usage_dict)


def get_llm_client(model_id: Optional[str] = None, chat_id: str = "") -> Union[LLMClient, AnthropicClient]:
    """Client for a public model id (unknown ids fall back to the default model)."""
    spec = resolve_model(model_id)
    if spec.provider == ProviderKind.ANTHROPIC:
        return AnthropicClient(spec, chat_id=chat_id)
    return LLMClient(spec, chat_id=chat_id)
