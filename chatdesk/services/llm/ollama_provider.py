from typing import List, Optional

import httpx

from chatdesk.logging_config import get_logger
from chatdesk.services.llm.base import LLMError, LLMProvider, LLMResponse, LLMTimeoutError, ToolCall, parse_tool_arguments

logger = get_logger("llm.ollama")


def to_ollama_messages(messages: List[dict]) -> List[dict]:
    """Ollama wants decoded tool arguments and no tool_call ids."""
    converted = []
    for message in messages:
        item = {"role": message["role"], "content": message.get("content") or ""}
        if message.get("tool_calls"):
            calls = []
            for call in message["tool_calls"]:
                function = call.get("function") or {}
                arguments, _ = parse_tool_arguments(function.get("arguments"))
                calls.append({"function": {"name": function.get("name"), "arguments": arguments}})
            item["tool_calls"] = calls
        if message["role"] == "tool" and message.get("name"):
            item["tool_name"] = message["name"]
        converted.append(item)
    return converted


class OllamaProvider(LLMProvider):
    """Local Ollama server (``/api/chat``)."""

    def __init__(self, base_url: str = "http://localhost:11434", default_model: str = "mistral:7b"):
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model

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
            "messages": to_ollama_messages(messages),
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if tools:
            payload["tools"] = tools

        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(f"{self.base_url}/api/chat", json=payload)
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(f"Ollama request timed out after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise LLMError(f"Ollama request failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(f"Ollama error: {response.text}")
            raise LLMError(f"Ollama API error: {response.status_code} - {response.text}")

        data = response.json()
        message = data.get("message") or {}
        tool_calls = []
        for index, raw_call in enumerate(message.get("tool_calls") or []):
            function = raw_call.get("function") or {}
            arguments, error = parse_tool_arguments(function.get("arguments"))
            tool_calls.append(
                ToolCall(
                    id=raw_call.get("id") or f"call_{index}",
                    name=function.get("name", ""),
                    arguments=arguments,
                    parse_error=error,
                )
            )

        usage = None
        if "prompt_eval_count" in data or "eval_count" in data:
            usage = {
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
            }

        logger.debug(f"Ollama response: model={data.get('model', model)}, tool_calls={[c.name for c in tool_calls]}")
        return LLMResponse(
            content=message.get("content") or "",
            model=data.get("model", model),
            usage=usage,
            tool_calls=tool_calls,
        )
