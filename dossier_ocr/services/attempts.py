"""Ordered attempt strategies.

A retry policy is a list of ``AttemptStrategy`` values (model, timeout,
payload transform) tried in order by ``try_with_fallbacks``. Each attempt is
bounded by its own timeout. When every attempt fails the error from the last
one is raised, so callers report the failure that actually ended the job.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("attempts")

P = TypeVar("P")
R = TypeVar("R")


def _identity(payload: Any) -> Any:
    return payload


@dataclass(frozen=True, slots=True)
class AttemptStrategy(Generic[P]):
    name: str
    model: str
    timeout: float
    transform: Callable[[P], P] = _identity


@dataclass(frozen=True, slots=True)
class AttemptOutcome(Generic[R]):
    value: R
    strategy: AttemptStrategy[Any]
    index: int


async def try_with_fallbacks(
    strategies: Sequence[AttemptStrategy[P]],
    payload: P,
    call: Callable[[AttemptStrategy[P], P], Awaitable[R]],
    *,
    on_attempt: Callable[[int, AttemptStrategy[P], BaseException | None], Any] | None = None,
) -> AttemptOutcome[R]:
    """Run ``call`` with each strategy until one succeeds.

    ``on_attempt(index, strategy, error)`` is invoked before each attempt with
    ``error=None`` and again after a failed attempt with the exception; it may
    be sync or async.
    """
    if not strategies:
        raise ValueError("at least one attempt strategy is required")
    last_error: BaseException | None = None
    for index, strategy in enumerate(strategies):
        await _notify(on_attempt, index, strategy, None)
        attempt_payload = strategy.transform(payload)
        try:
            value = await asyncio.wait_for(call(strategy, attempt_payload), timeout=strategy.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - each failure moves to the next strategy
            last_error = exc
            structured_log(
                LOG,
                logging.WARNING,
                "attempt_failed",
                attempt=index + 1,
                strategy=strategy.name,
                model=strategy.model,
                timeout_s=strategy.timeout,
                error_type=exc.__class__.__name__,
            )
            await _notify(on_attempt, index, strategy, exc)
            continue
        structured_log(
            LOG,
            logging.INFO,
            "attempt_succeeded",
            attempt=index + 1,
            strategy=strategy.name,
            model=strategy.model,
        )
        return AttemptOutcome(value=value, strategy=strategy, index=index)
    assert last_error is not None
    raise last_error


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    outcome = callback(*args)
    if inspect.isawaitable(outcome):
        await outcome


__all__ = ["AttemptOutcome", "AttemptStrategy", "try_with_fallbacks"]
