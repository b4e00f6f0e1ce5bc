"""Handler registry and dispatcher: event_name -> side-effect function, invoked under timeout."""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Awaitable, Callable, Union

from outbox.events.models import Event

logger = logging.getLogger(__name__)

HandlerFn = Callable[[Event], Union[Awaitable[Any], Any]]

DEFAULT_HANDLER_TIMEOUT = 120.0


class RetryableHandlerError(Exception):
    """Handler failed but a later attempt may succeed (network error, timeout)."""


class PermanentHandlerError(Exception):
    """Handler failed in a way no retry can fix (malformed payload, unknown reference)."""


class DispatchOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"
    UNHANDLED = "unhandled"


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch. `error` is set for the two failure variants."""

    outcome: DispatchOutcome
    handler: str | None = None
    error: str | None = None

    @property
    def acknowledged(self) -> bool:
        """True when the event should be marked processed."""
        return self.outcome in (DispatchOutcome.SUCCEEDED, DispatchOutcome.UNHANDLED)


@dataclass(frozen=True)
class _Registration:
    pattern: str
    handler: HandlerFn
    name: str

    @property
    def is_pattern(self) -> bool:
        return any(ch in self.pattern for ch in "*?[")


def _is_async_callable(fn: Any) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


class HandlerRegistry:
    """Exact names win over wildcard patterns; among patterns, first registered wins."""

    def __init__(self) -> None:
        self._exact: dict[str, _Registration] = {}
        self._patterns: list[_Registration] = []

    def register(self, pattern: str, handler: HandlerFn, name: str | None = None) -> None:
        """Register handler for an exact event name or a shell-style pattern (`pursuit.*`)."""
        pattern = (pattern or "").strip()
        if not pattern:
            raise ValueError("handler pattern must not be empty")
        if not callable(handler):
            raise TypeError(f"handler for {pattern!r} must be callable")
        reg = _Registration(
            pattern=pattern,
            handler=handler,
            name=name or getattr(handler, "__qualname__", None) or repr(handler),
        )
        if reg.is_pattern:
            self._patterns.append(reg)
        else:
            if pattern in self._exact:
                raise ValueError(f"handler already registered for {pattern!r}")
            self._exact[pattern] = reg
        logger.debug("outbox registry: %s -> %s", pattern, reg.name)

    def resolve(self, event_name: str) -> _Registration | None:
        reg = self._exact.get(event_name)
        if reg is not None:
            return reg
        for reg in self._patterns:
            if fnmatchcase(event_name, reg.pattern):
                return reg
        return None

    def patterns(self) -> list[str]:
        return list(self._exact) + [r.pattern for r in self._patterns]

    def __contains__(self, event_name: str) -> bool:
        return self.resolve(event_name) is not None


class Dispatcher:
    """Invokes the resolved handler and maps its behaviour to a DispatchResult.

    Coroutine handlers are awaited; plain callables run in a worker thread so
    the timeout applies to both. A timed-out thread is abandoned, not killed.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        handler_timeout: float = DEFAULT_HANDLER_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._timeout = handler_timeout

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def handler_timeout(self) -> float:
        return self._timeout

    async def _invoke(self, reg: _Registration, event: Event) -> Any:
        if _is_async_callable(reg.handler):
            call = reg.handler(event)
        else:
            call = asyncio.to_thread(reg.handler, event)
        try:
            result = await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise RetryableHandlerError(
                f"handler {reg.name} timed out after {self._timeout}s"
            ) from None
        if inspect.isawaitable(result):
            # sync wrapper that returned a coroutine
            result = await asyncio.wait_for(result, timeout=self._timeout)
        return result

    async def dispatch(self, event: Event) -> DispatchResult:
        reg = self._registry.resolve(event.event_name)
        if reg is None:
            logger.info(
                "outbox dispatch: no handler for %s (event %s); acknowledging",
                event.event_name,
                event.id,
            )
            return DispatchResult(DispatchOutcome.UNHANDLED)

        try:
            result = await self._invoke(reg, event)
        except PermanentHandlerError as e:
            logger.error(
                "outbox dispatch: handler %s permanently failed event %s/%s: %s",
                reg.name,
                event.event_name,
                event.id,
                e,
            )
            return DispatchResult(DispatchOutcome.PERMANENT, reg.name, str(e) or type(e).__name__)
        except Exception as e:
            logger.exception(
                "outbox dispatch: handler %s failed for event %s/%s: %s",
                reg.name,
                event.event_name,
                event.id,
                e,
            )
            return DispatchResult(
                DispatchOutcome.RETRYABLE, reg.name, f"{type(e).__name__}: {e}"
            )

        if result is False:
            return DispatchResult(
                DispatchOutcome.RETRYABLE, reg.name, f"handler {reg.name} returned False"
            )
        return DispatchResult(DispatchOutcome.SUCCEEDED, reg.name)
