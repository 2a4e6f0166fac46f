from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar('T')


@dataclass(frozen=True)
class BatchFailure(Generic[T]):
    item: T
    error: str


@dataclass
class BatchResult(Generic[T]):
    succeeded: list[T] = field(default_factory=list)
    failed: list[BatchFailure[T]] = field(default_factory=list)

    def ok(self, item: T) -> None:
        self.succeeded.append(item)

    def fail(self, item: T, error: Exception | str) -> None:
        self.failed.append(BatchFailure(item=item, error=str(error)))

    def extend(self, other: BatchResult[T]) -> None:
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)

    @property
    def is_complete(self) -> bool:
        return not self.failed

    def summary(self) -> dict:
        return {
            'succeeded': len(self.succeeded),
            'failed': len(self.failed),
            'errors': [failure.error for failure in self.failed],
        }
