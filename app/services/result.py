from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a best-effort call (gateway delivery, health probes)."""

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

    def as_delivery_metadata(self) -> dict[str, Any]:
        """Shape stored on a message after a delivery attempt."""
        if self.ok:
            return {"delivered": True}
        return {"delivered": False, "delivery_error": self.error, "delivery_error_code": self.error_code}
