"""Tagged success/failure values."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, NoReturn, TypeVar

T = TypeVar("T")
E = TypeVar("E", bound=BaseException)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """成功値."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self) -> NoReturn:
        msg = f"Called unwrap_err() on Ok: {self.value!r}"
        raise ValueError(msg)


@dataclass(frozen=True)
class Err(Generic[E]):
    """失敗値（原因となった例外を保持する）."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise self.error

    def unwrap_err(self) -> E:
        return self.error


Result = Ok[T] | Err[E]
