"""Typed outcomes for fallible I/O steps (probe, encode, sample, swap).

Callers branch on ``outcome.ok`` and ``outcome.error`` instead of catching
broad exceptions, so a degraded-but-usable step can be told apart from a
fatal one.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    INPUT = "input"
    TOOL = "tool"
    TIMEOUT = "timeout"
    POLICY = "policy"
    STORAGE = "storage"


class ForensicsInputError(Exception):
    """Unusable input (unprobeable file, bad layout, disallowed URL). Never retried."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    reason: str = ""
    degraded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, *, degraded: bool = False, reason: str = "") -> "Outcome[T]":
        return cls(value=value, degraded=degraded, reason=reason)

    @classmethod
    def failure(cls, kind: ErrorKind, reason: str) -> "Outcome[T]":
        return cls(error=kind, reason=reason)
