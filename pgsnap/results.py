"""Outcome type returned by repository operations."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class SuccessResult:
    """Either a success or a failure carrying a human-readable message."""

    succeeded: bool
    message: str | None = None

    @classmethod
    def success(cls) -> SuccessResult:
        return cls(succeeded=True)

    @classmethod
    def failure(cls, message: str) -> SuccessResult:
        return cls(succeeded=False, message=message)

    @property
    def failed(self) -> bool:
        return not self.succeeded

    def __bool__(self) -> bool:
        return self.succeeded


__all__ = ["SuccessResult"]
