from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable

Handler = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class HandlerResult:
    ok: bool
    result: Any | None = None
    error: str | None = None

    @classmethod
    def success(cls, result: Any | None = None) -> "HandlerResult":
        return cls(ok=True, result=result)

    @classmethod
    def failure(cls, error: str) -> "HandlerResult":
        return cls(ok=False, error=error)


class InvalidHandlerResultError(ValueError):
    pass


def normalize_handler_result(raw: Any) -> HandlerResult:
    if raw is None:
        return HandlerResult.success()
    if isinstance(raw, HandlerResult):
        return raw
    if isinstance(raw, Mapping) and "ok" in raw:
        if bool(raw["ok"]):
            return HandlerResult.success(raw.get("result"))
        error = raw.get("error")
        return HandlerResult.failure(str(error) if error is not None else "Handler reported failure")
    raise InvalidHandlerResultError(f"Handler returned an unstructured result of type {type(raw).__name__}")


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.Lock()

    def register(self, job_type: str, handler: Handler) -> None:
        normalized = job_type.strip()
        if not normalized:
            raise ValueError("job_type cannot be blank")
        if not callable(handler):
            raise ValueError(f"Handler for {normalized} is not callable")
        with self._lock:
            if normalized in self._handlers:
                raise ValueError(f"Handler already registered for job type: {normalized}")
            self._handlers[normalized] = handler

    def handler(self, job_type: str) -> Callable[[Handler], Handler]:
        def decorator(func: Handler) -> Handler:
            self.register(job_type, func)
            return func

        return decorator

    def resolve(self, job_type: str) -> Handler | None:
        with self._lock:
            return self._handlers.get(job_type)

    def job_types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)


def _noop_handler(payload: dict[str, Any]) -> HandlerResult:
    return HandlerResult.success({"echo": payload})


def build_default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register("noop", _noop_handler)
    return registry


@lru_cache
def get_handler_registry() -> HandlerRegistry:
    return build_default_registry()
