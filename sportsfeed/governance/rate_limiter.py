from __future__ import annotations
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

from sportsfeed.errors import QuotaWeightError

logger = logging.getLogger(__name__)

# Absorbs float drift in refill arithmetic so an exact wait is enough.
_EPSILON = 1e-9


class TokenBucket:
    """
    Single token bucket. Not thread-safe on its own; AdmissionController
    holds the per-credential lock around every call.
    """

    def __init__(self, capacity: int, refill_rate: float, now: float) -> None:
        """
        :param capacity: Maximum number of tokens in the bucket.
        :param refill_rate: Tokens added per second.
        """
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = now

    def refill(self, now: float) -> None:
        delta = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + delta * self.refill_rate)
        self.last_refill = now

    def can_cover(self, amount: int) -> bool:
        return self.tokens + _EPSILON >= amount

    def seconds_until(self, amount: int) -> float:
        """Seconds until `amount` tokens are available (0 if already there)."""
        deficit = amount - self.tokens
        if deficit <= _EPSILON:
            return 0.0
        return deficit / self.refill_rate


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after_s: int = 0
    remaining: int = 0


class _CredentialState:
    def __init__(self, per_minute: int, per_day: int, now: float) -> None:
        self.lock = threading.Lock()
        self.minute = TokenBucket(per_minute, per_minute / 60.0, now)
        self.day = TokenBucket(per_day, per_day / 86_400.0, now)


class AdmissionController:
    """
    Process-local rate limiter keyed by credential.

    Each credential gets a per-minute and a per-day token bucket. A call is
    admitted only when both buckets can cover its weight; then both are
    debited together. A denied check consumes nothing and reports how many
    seconds until the slower bucket could cover the weight.

    Admission never sleeps: callers get an answer immediately.
    Contention is scoped to one credential; different credentials never
    share a lock beyond the brief bucket-creation step.
    """

    def __init__(
        self,
        requests_per_minute: int = 100,
        requests_per_day: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.requests_per_day = requests_per_day
        self._clock = clock
        self._states: Dict[str, _CredentialState] = {}
        self._states_lock = threading.Lock()

    def _state(self, credential: str) -> _CredentialState:
        with self._states_lock:
            state = self._states.get(credential)
            if state is None:
                state = _CredentialState(
                    self.requests_per_minute, self.requests_per_day, self._clock()
                )
                self._states[credential] = state
            return state

    def admit(self, credential: str, weight: int = 1) -> Admission:
        """
        Attempt to consume `weight` tokens for credential.

        Returns:
            Admission(allowed=True, remaining=...) when debited, otherwise
            Admission(allowed=False, retry_after_s=...) with nothing consumed.

        Raises:
            QuotaWeightError: weight can never fit in the buckets.
        """
        capacity = min(self.requests_per_minute, self.requests_per_day)
        if weight > capacity:
            raise QuotaWeightError(f"call weight {weight} exceeds bucket capacity {capacity}")
        state = self._state(credential)
        with state.lock:
            now = self._clock()
            state.minute.refill(now)
            state.day.refill(now)

            if state.minute.can_cover(weight) and state.day.can_cover(weight):
                state.minute.tokens -= weight
                state.day.tokens -= weight
                return Admission(allowed=True, remaining=_remaining(state))

            wait = max(state.minute.seconds_until(weight), state.day.seconds_until(weight))
            retry_after = max(1, math.ceil(round(wait, 6)))
            logger.warning(
                "Rate limit hit: credential=%s weight=%d retry_after=%ds",
                _mask(credential), weight, retry_after,
            )
            return Admission(allowed=False, retry_after_s=retry_after, remaining=_remaining(state))

    def get_status(self, credential: str) -> Dict[str, Any]:
        """Current bucket state without consuming tokens."""
        state = self._state(credential)
        with state.lock:
            now = self._clock()
            state.minute.refill(now)
            state.day.refill(now)
            return {
                "remaining_minute": int(state.minute.tokens),
                "remaining_day": int(state.day.tokens),
                "capacity_minute": state.minute.capacity,
                "capacity_day": state.day.capacity,
            }

    def reset(self, credential: str) -> None:
        with self._states_lock:
            self._states.pop(credential, None)

    def reset_all(self) -> None:
        with self._states_lock:
            self._states.clear()


def _remaining(state: _CredentialState) -> int:
    return int(min(state.minute.tokens, state.day.tokens))


def _mask(credential: str) -> str:
    """Keep keys out of logs."""
    if len(credential) <= 4:
        return "****"
    return "****" + credential[-4:]
