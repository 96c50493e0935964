from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

PARAMETER_TYPES = ("string", "number", "boolean")


@dataclass(frozen=True)
class ParameterSpec:
    type: str
    description: str = ""
    required: bool = False
    enum: Optional[tuple] = None

    def __post_init__(self):
        if self.type not in PARAMETER_TYPES:
            raise ValueError(f"Unsupported parameter type: {self.type}")

    def to_schema(self) -> dict:
        schema = {"type": self.type, "description": self.description}
        if self.enum:
            schema["enum"] = list(self.enum)
        return schema


@dataclass
class ToolResult:
    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, message: str, data: Optional[Any] = None) -> "ToolResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, error: Optional[str] = None) -> "ToolResult":
        return cls(success=False, message=message, error=error or message)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ToolContext:
    """Per-invocation data handed to a tool. Tools keep no state of their own."""

    db: Session
    now: datetime
    conversation_id: Optional[UUID] = None
    message_id: Optional[UUID] = None
    contact_identifier: Optional[str] = None
    contact_name: Optional[str] = None
    timezone: str = "Europe/Rome"


class Tool(ABC):
    name: str = ""
    description: str = ""
    parameters: dict = {}

    @abstractmethod
    def execute(self, params: dict, context: ToolContext) -> ToolResult:
        pass

    def definition(self) -> dict:
        """Function-calling definition (OpenAI ``tools`` entry)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {name: spec.to_schema() for name, spec in self.parameters.items()},
                    "required": [name for name, spec in self.parameters.items() if spec.required],
                },
            },
        }
