from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

NOT_CONFIGURED = "not_configured"
HTTP_ERROR = "http_error"
SLACK_ERROR = "slack_error"
INVALID_RESPONSE = "invalid_response"


@dataclass
class Result(Generic[T]):
    """Outcome of an outbound platform call."""

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

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
