import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple


class LLMError(Exception):
    """LLM backend returned an error or an unusable response."""


class LLMTimeoutError(LLMError):
    """LLM backend did not answer within the configured timeout."""


@dataclass
class ToolCall:
    name: str
    arguments: dict
    id: Optional[str] = None
    parse_error: Optional[str] = None  # arguments were not a JSON object


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


def parse_tool_arguments(raw: Any) -> Tuple[dict, Optional[str]]:
    """Decode tool arguments that may arrive as a JSON string or an already decoded dict."""
    if raw is None or raw == "":
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            return {}, f"arguments are not valid JSON: {exc.msg}"
        if isinstance(decoded, dict):
            return decoded, None
    return {}, "arguments must be a JSON object"


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    ``messages`` use the chat-completions shape: system/user/assistant turns,
    assistant turns may carry ``tool_calls`` and tool results come back as
    ``{"role": "tool", "tool_call_id", "name", "content"}``.
    """

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        tools: Optional[List[dict]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate a response, possibly requesting tool calls."""
        pass
