from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

logger = logging.getLogger("uvicorn.error")


class PoolState(str, Enum):
    UNVERIFIED = "unverified"
    VALID = "valid"
    INVALID = "invalid"
    COOLDOWN = "cooldown"


class Outcome(str, Enum):
    SUCCESS = "success"
    AUTH_FAILURE = "auth_failure"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(slots=True)
class PoolPolicy:
    failure_threshold: int = 3
    cooldown_seconds: float = 300.0


@dataclass(slots=True)
class PoolEntry:
    id: str
    state: PoolState = PoolState.VALID
    last_used_at: float | None = None
    consecutive_failures: int = 0
    cooldown_until: float = 0.0


E = TypeVar("E", bound=PoolEntry)


class RotatingPool(Generic[E]):
    """Round-robin selection over healthy entries with invalidation and cooldown.

    Every public method is synchronous and never awaits, so on a single event
    loop each call observes and leaves the pool in a consistent state.
    Cooldown expiry is checked lazily on read, against ``clock``.
    """

    kind = "entry"

    def __init__(
        self,
        entries: Iterable[E],
        policy: PoolPolicy,
        *,
        clock: Callable[[], float] = time.time,
        event_hook: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> None:
        self._entries: list[E] = []
        self._by_id: dict[str, E] = {}
        for entry in entries:
            if entry.id in self._by_id:
                raise ValueError(f"Duplicate {self.kind} id '{entry.id}'.")
            self._entries.append(entry)
            self._by_id[entry.id] = entry
        self._policy = PoolPolicy(
            failure_threshold=max(1, int(policy.failure_threshold)),
            cooldown_seconds=max(0.0, float(policy.cooldown_seconds)),
        )
        self._clock = clock
        self._event_hook = event_hook
        self._cursor = 0
        self._ever_valid = any(entry.state == PoolState.VALID for entry in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def policy(self) -> PoolPolicy:
        return self._policy

    @property
    def ever_valid(self) -> bool:
        return self._ever_valid

    def get(self, entry_id: str) -> E:
        try:
            return self._by_id[entry_id]
        except KeyError:
            raise KeyError(f"Unknown {self.kind} id '{entry_id}'.") from None

    def valid_count(self) -> int:
        self._expire_cooldowns()
        return sum(1 for entry in self._entries if entry.state == PoolState.VALID)

    def status_snapshot(self) -> list[dict[str, Any]]:
        self._expire_cooldowns()
        return [self._describe(entry) for entry in self._entries]

    def select(self) -> E | None:
        self._expire_cooldowns()
        total = len(self._entries)
        if total == 0:
            return None
        start = self._cursor
        for offset in range(total):
            index = (start + offset) % total
            entry = self._entries[index]
            if entry.state == PoolState.VALID:
                self._cursor = (index + 1) % total
                return entry
        self._cursor = (start + 1) % total
        return None

    def report_outcome(self, entry_id: str, outcome: Outcome) -> PoolState:
        entry = self.get(entry_id)
        self._expire_cooldowns()
        if entry.state == PoolState.INVALID:
            return entry.state

        if outcome == Outcome.SUCCESS:
            entry.consecutive_failures = 0
            entry.last_used_at = self._clock()
            if entry.state != PoolState.VALID:
                entry.cooldown_until = 0.0
                self._transition(entry, PoolState.VALID, reason="success")
            return entry.state

        if outcome == Outcome.AUTH_FAILURE:
            entry.cooldown_until = 0.0
            self._transition(entry, PoolState.INVALID, reason="auth_failure")
            return entry.state

        if entry.state == PoolState.COOLDOWN:
            return entry.state
        entry.consecutive_failures += 1
        if entry.consecutive_failures >= self._policy.failure_threshold:
            entry.cooldown_until = self._clock() + self._policy.cooldown_seconds
            self._transition(entry, PoolState.COOLDOWN, reason="transient_failures")
        return entry.state

    def mark(self, entry_id: str, state: PoolState, *, reason: str) -> None:
        entry = self.get(entry_id)
        if entry.state == state:
            return
        self._transition(entry, state, reason=reason)

    def reset_cursor(self) -> None:
        self._cursor = 0

    def _expire_cooldowns(self) -> None:
        now = self._clock()
        for entry in self._entries:
            if entry.state == PoolState.COOLDOWN and now >= entry.cooldown_until:
                entry.consecutive_failures = 0
                entry.cooldown_until = 0.0
                self._transition(entry, PoolState.VALID, reason="cooldown_expired")

    def _transition(self, entry: E, state: PoolState, *, reason: str) -> None:
        previous = entry.state
        entry.state = state
        if state == PoolState.VALID:
            self._ever_valid = True
        logger.info(
            "pool_transition kind=%s id=%s from=%s to=%s reason=%s failures=%d",
            self.kind,
            entry.id,
            previous.value,
            state.value,
            reason,
            entry.consecutive_failures,
        )
        if self._event_hook is None:
            return
        try:
            self._event_hook(
                "pool_transition",
                {
                    "kind": self.kind,
                    "id": entry.id,
                    "from": previous.value,
                    "to": state.value,
                    "reason": reason,
                    "consecutive_failures": entry.consecutive_failures,
                },
            )
        except Exception as exc:
            logger.debug("pool_event_hook_failed kind=%s error=%s", self.kind, exc)

    def _describe(self, entry: E) -> dict[str, Any]:
        remaining = 0.0
        if entry.state == PoolState.COOLDOWN:
            remaining = max(0.0, entry.cooldown_until - self._clock())
        return {
            "id": entry.id,
            "state": entry.state.value,
            "last_used_at": entry.last_used_at,
            "consecutive_failures": entry.consecutive_failures,
            "cooldown_remaining_seconds": round(remaining, 3),
        }
