"""
Provider attempt state machine.

Both fallback entry points of the router run through run_fallback_chain:
each candidate is Attempted, ends as Success, Unavailable or Failed, and
the chain then Returns, moves to the NextCandidate, or is Exhausted.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import structlog

from ..core.enums import ProviderId
from ..core.errors import AllProvidersExhausted
from .providers import ProviderRegistry, maybe_await

logger = structlog.get_logger()

FALLBACK_MESSAGE = "Using alternative model for best response"


class AttemptState(Enum):
    """Outcome of a single provider attempt."""
    SUCCESS = "success"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass(frozen=True)
class Attempt:
    provider: ProviderId
    state: AttemptState
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class FallbackOutcome:
    """Provider that produced a usable result, with every attempt consulted."""
    provider: ProviderId
    value: Any
    attempts: List[Attempt]

    @property
    def fallback_used(self) -> bool:
        return len(self.attempts) > 1


async def run_fallback_chain(
    candidates: Sequence[ProviderId],
    registry: ProviderRegistry,
    execute: Optional[Callable[[ProviderId], Awaitable[Any]]] = None,
    on_fallback: Optional[Callable[[dict], Any]] = None,
) -> FallbackOutcome:
    """Try candidates in order until one succeeds.

    Candidates are evaluated sequentially with no per-attempt timeout.

    Args:
        candidates: Primary provider followed by its fallbacks
        registry: Registry resolving availability
        execute: Coroutine function run against an available candidate;
            when None, availability alone counts as success
        on_fallback: Callback (sync or async) notified when a candidate
            other than the primary is chosen

    Returns:
        FallbackOutcome of the first successful candidate

    Raises:
        AllProvidersExhausted: If no candidate succeeded; chained from the
            last provider error when one was raised
    """
    if not candidates:
        raise AllProvidersExhausted("none")

    primary = candidates[0]
    attempts: List[Attempt] = []
    last_error: Optional[BaseException] = None

    for provider in candidates:
        if not await registry.is_available(provider):
            logger.info("provider_unavailable", provider=provider.value, primary=primary.value)
            attempts.append(Attempt(provider, AttemptState.UNAVAILABLE))
            continue

        value = None
        if execute is not None:
            try:
                value = await execute(provider)
            except Exception as e:
                logger.warning(
                    "provider_attempt_failed",
                    provider=provider.value,
                    primary=primary.value,
                    error=str(e),
                )
                attempts.append(Attempt(provider, AttemptState.FAILED, e))
                last_error = e
                continue

        attempts.append(Attempt(provider, AttemptState.SUCCESS))
        if provider != primary:
            logger.info("provider_fallback", primary=primary.value, fallback=provider.value)
            if on_fallback is not None:
                await _notify(on_fallback, {
                    "primary": primary.value,
                    "fallback": provider.value,
                    "message": FALLBACK_MESSAGE,
                })
        return FallbackOutcome(provider=provider, value=value, attempts=attempts)

    logger.error(
        "fallback_chain_exhausted",
        primary=primary.value,
        tried=[a.provider.value for a in attempts],
    )
    raise AllProvidersExhausted(primary.value, attempts, last_error) from last_error


async def _notify(callback: Callable[[dict], Any], payload: dict) -> None:
    try:
        await maybe_await(callback(payload))
    except Exception as e:
        logger.warning("fallback_callback_failed", error=str(e))
