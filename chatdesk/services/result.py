from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# error codes used by the AI layer
AI_ERROR = "ai_error"
AI_TIMEOUT = "ai_timeout"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap(self) -> T:
        if not self.ok:
            raise ValueError(f"Result is a failure ({self.error_code}): {self.error}")
        return self.value
