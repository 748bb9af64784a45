"""
Anthropic Client - wraps the Anthropic SDK for the Claude model family.

Same stream_step() contract as LLMClient, but speaks the Messages API so
cache breakpoints reach the provider as real cache_control blocks:
- system messages -> system= text blocks
- ModelMessage.cache_control -> cache_control on the message's last block
- assistant tool calls -> tool_use blocks
- tool messages -> tool_result blocks in a user message (consecutive merged)
"""

import base64
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import anthropic
import httpx
from anthropic import AsyncAnthropic

from config import runtime_config
from errors import ProviderError
from logging_config import log_cache
from routers.chat_orchestration.turn import Content, ModelMessage, StepEvent, ToolCall
from services.cache_strategy import extract_cache_metrics
from services.llm_config import ModelSpec, get_endpoint

logger = logging.getLogger(__name__)


def _image_block(url: str, media_type: str) -> Dict[str, Any]:
    if url.startswith("data:"):
        meta, _, data = url.partition(",")
        media_type = meta[5:].split(";")[0] or media_type
        if ";base64" not in meta:
            data = base64.b64encode(data.encode("utf-8")).decode("ascii")
        return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
    return {"type": "image", "source": {"type": "url", "url": url}}


def _content_blocks(content: Content) -> List[Dict[str, Any]]:
    """Translate message content to Messages API content blocks."""
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []

    blocks: List[Dict[str, Any]] = []
    for part in content:
        kind = part.get("type")
        if kind == "text":
            if part.get("text"):
                blocks.append({"type": "text", "text": part["text"]})
        elif kind in ("file", "image"):
            url = part.get("url") or part.get("data") or ""
            media_type = part.get("media_type") or part.get("mediaType") or ""
            if kind == "image" or media_type.startswith("image/"):
                blocks.append(_image_block(url, media_type or "image/png"))
            else:
                blocks.append({"type": "text", "text": f"[Attached file: {part.get('name') or url}]"})
    return blocks


def _translate_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Chat-completions function tools -> Messages API tools."""
    translated = []
    for tool in tools:
        fn = tool.get("function") or {}
        translated.append({
            "name": fn.get("name", ""),
            "description": fn.get("description", ""),
            "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
        })
    return translated


def translate_messages_for_anthropic(
    messages: List[ModelMessage],
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Split ModelMessages into (system blocks, messages) for the Messages API.

    A breakpoint on a message lands on its last block. Consecutive messages
    with the same API role are merged, since the API requires alternation.
    """
    system: List[Dict[str, Any]] = []
    translated: List[Dict[str, Any]] = []

    for msg in messages:
        if msg.role == "system":
            blocks = _content_blocks(msg.content)
            if blocks and msg.cache_control:
                blocks[-1]["cache_control"] = dict(msg.cache_control)
            system.extend(blocks)
            continue

        if msg.role == "tool":
            role = "user"
            blocks = [{"type": "tool_result", "tool_use_id": msg.tool_call_id or "call_0", "content": msg.text}]
        elif msg.role == "assistant":
            role = "assistant"
            blocks = _content_blocks(msg.content)
            for call in msg.tool_calls or []:
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
        else:
            role = "user"
            blocks = _content_blocks(msg.content)

        if not blocks:
            # The API rejects empty content
            blocks = [{"type": "text", "text": "."}]
        if msg.cache_control:
            blocks[-1]["cache_control"] = dict(msg.cache_control)

        if translated and translated[-1]["role"] == role:
            translated[-1]["content"].extend(blocks)
        else:
            translated.append({"role": role, "content": blocks})

    return system, translated


def _usage_to_dict(usage: Any) -> Optional[Dict[str, Any]]:
    """Messages API usage, plus prompt_tokens covering cached and uncached input."""
    if usage is None:
        return None
    data = usage if isinstance(usage, dict) else usage.model_dump()
    data = dict(data)
    data["prompt_tokens"] = (
        (data.get("input_tokens") or 0)
        + (data.get("cache_read_input_tokens") or 0)
        + (data.get("cache_creation_input_tokens") or 0)
    )
    return data


class AnthropicClient:
    """Wraps AsyncAnthropic for one catalog model."""

    def __init__(
        self,
        spec: ModelSpec,
        chat_id: str = "",
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        self.spec = spec
        self.model = spec.upstream_model
        self.provider = spec.provider
        self.chat_id = chat_id
        self.temperature = runtime_config.llm_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or runtime_config.llm_max_tokens

        if client is None:
            endpoint = get_endpoint(spec.provider)
            client = AsyncAnthropic(
                base_url=endpoint.base_url,
                api_key=os.environ.get(endpoint.api_key_env) or "not-configured",
                timeout=timeout or runtime_config.llm_timeout,
            )
        self._anthropic = client

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
        system, api_messages = translate_messages_for_anthropic(messages)
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": api_messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = _translate_tools(tools)
        if extra_options:
            kwargs["extra_body"] = dict(extra_options)

        try:
            async with self._anthropic.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if event.type == "content_block_delta" and event.delta.type == "text_delta":
                        yield StepEvent(text=event.delta.text)
                final = await stream.get_final_message()
        except anthropic.APITimeoutError as e:
            raise ProviderError("Model provider timed out", details=str(e), model=self.model, error_type="timeout")
        except anthropic.RateLimitError as e:
            raise ProviderError(
                "Model provider rate limit reached", details=str(e), model=self.model, error_type="rate_limit"
            )
        except anthropic.APIStatusError as e:
            raise ProviderError(
                f"Model provider returned HTTP {e.status_code}", details=str(e), model=self.model
            )
        except (anthropic.APIError, httpx.HTTPError) as e:
            raise ProviderError("Model provider request failed", details=str(e), model=self.model)

        calls = [
            ToolCall(id=block.id, name=block.name, arguments=block.input if isinstance(block.input, dict) else {})
            for block in final.content
            if block.type == "tool_use"
        ]

        usage_dict = _usage_to_dict(final.usage)
        log_cache(logger, self.provider.value, extract_cache_metrics(self.provider, usage_dict))

        yield StepEvent(tool_calls=calls or None, usage=usage_dict)
