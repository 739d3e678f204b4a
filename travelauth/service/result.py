"""Tagged success/failure values returned by every auth flow.

Expected failures (bad password, expired token, rate limit) are values, not
exceptions; callers branch on ``is_ok()`` or use structural pattern matching.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar, Union

from travelauth.service.errors import AuthError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, func: Callable[[T], U]) -> "Result[U]":
        return Ok(func(self.value))


@dataclass(frozen=True)
class Err:
    error: AuthError

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise RuntimeError(f"called unwrap on Err: {self.error.kind.value}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, func: Callable) -> "Err":
        return self


Result = Union[Ok[T], Err]


def fail(kind, message: str | None = None, **kwargs) -> Err:
    """Shorthand for ``Err(AuthError(kind, ...))``."""

    return Err(AuthError.of(kind, message, **kwargs))


__all__ = ["Ok", "Err", "Result", "fail"]
