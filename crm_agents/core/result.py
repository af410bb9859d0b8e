"""Result type returned by every fallible orchestrator operation.

``Ok`` is truthy and ``Err`` is falsy, so callers that only care whether an
operation found its target can write ``if not orchestrator.delete_workflow(id)``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .errors import OrchestratorError

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    def __bool__(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True, slots=True)
class Err:
    error: OrchestratorError

    def __bool__(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


Result = Union[Ok[T], Err]
