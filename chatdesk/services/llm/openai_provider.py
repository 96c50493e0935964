from typing import List, Optional

import httpx

from chatdesk.logging_config import get_logger
from chatdesk.services.llm.base import LLMError, LLMProvider, LLMResponse, LLMTimeoutError, ToolCall, parse_tool_arguments

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions provider with function calling."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", base_url: str = "https://api.openai.com/v1"):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = f"{base_url.rstrip('/')}/chat/completions"

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        tools: Optional[List[dict]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}, tools={len(tools or [])}")

        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(f"OpenAI request timed out after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise LLMError(f"OpenAI request failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise LLMError(f"OpenAI API error: {response.status_code} - {response.text}")

        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("OpenAI response has no choices")

        message = choices[0].get("message") or {}
        tool_calls = []
        for raw_call in message.get("tool_calls") or []:
            function = raw_call.get("function") or {}
            arguments, error = parse_tool_arguments(function.get("arguments"))
            tool_calls.append(
                ToolCall(
                    id=raw_call.get("id"),
                    name=function.get("name", ""),
                    arguments=arguments,
                    parse_error=error,
                )
            )

        return LLMResponse(
            content=message.get("content") or "",
            model=data.get("model", model),
            usage=data.get("usage"),
            tool_calls=tool_calls,
        )
