from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from chronojob.core.config import Settings


class BackoffStrategy(Protocol):
    def delay(self, attempt: int) -> timedelta: ...


@dataclass(frozen=True)
class FixedBackoff:
    seconds: int

    def delay(self, attempt: int) -> timedelta:
        return timedelta(seconds=self.seconds)


@dataclass(frozen=True)
class LinearBackoff:
    base_seconds: int
    max_seconds: int

    def delay(self, attempt: int) -> timedelta:
        steps = max(1, attempt)
        return timedelta(seconds=min(self.base_seconds * steps, self.max_seconds))


@dataclass(frozen=True)
class ExponentialBackoff:
    base_seconds: int
    max_seconds: int

    def delay(self, attempt: int) -> timedelta:
        exponent = max(0, attempt - 1)
        # cap the exponent before multiplying so huge attempt counts stay cheap
        if exponent >= 32:
            return timedelta(seconds=self.max_seconds)
        return timedelta(seconds=min(self.base_seconds * (2**exponent), self.max_seconds))


def build_backoff(settings: Settings) -> BackoffStrategy:
    strategy = settings.retry_backoff_strategy
    if strategy == "fixed":
        return FixedBackoff(seconds=settings.retry_base_seconds)
    if strategy == "linear":
        return LinearBackoff(base_seconds=settings.retry_base_seconds, max_seconds=settings.retry_max_seconds)
    return ExponentialBackoff(base_seconds=settings.retry_base_seconds, max_seconds=settings.retry_max_seconds)
