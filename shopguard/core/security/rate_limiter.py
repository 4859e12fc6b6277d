# shopguard/core/security/rate_limiter.py
"""
Sliding-window rate limiter with escalating block.

Entries are keyed by ``operation:identity``. The window starts at the
first recorded attempt and resets once it has elapsed. Exceeding the
attempt budget blocks the key for ``block_duration`` measured from the
last attempt. Keys are independent; there is no global ceiling.

The limiter returns decisions, never raises. Turning a deny into an
exception is the caller's job.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from shopguard.core.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Rate limit policy configuration.

    Attributes:
        max_attempts: Attempts allowed inside one window
        window: Window length, measured from the first attempt
        block_duration: Block length once the budget is exceeded,
            measured from the last attempt
    """
    max_attempts: int = 5
    window: timedelta = timedelta(minutes=15)
    block_duration: timedelta = timedelta(minutes=30)

    def __str__(self) -> str:
        return (
            f"{self.max_attempts} attempts per {self.window.total_seconds()}s, "
            f"block {self.block_duration.total_seconds()}s"
        )


DEFAULT_POLICY = RateLimitPolicy()


@dataclass
class RateLimitEntry:
    key: str
    count: int
    first_attempt_at: datetime
    last_attempt_at: datetime
    blocked: bool = False


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: Optional[float] = None
    exempt: bool = False


@dataclass(frozen=True)
class ExemptionPolicy:
    """
    Operations that bypass rate limiting entirely.

    Matches exact operation names or name prefixes. The set is product
    policy and comes from configuration.
    """
    operations: FrozenSet[str] = field(default_factory=frozenset)
    prefixes: Tuple[str, ...] = ()

    @classmethod
    def from_lists(cls, operations: Iterable[str], prefixes: Iterable[str]) -> "ExemptionPolicy":
        return cls(operations=frozenset(operations), prefixes=tuple(prefixes))

    def __call__(self, operation: str) -> bool:
        return operation in self.operations or any(
            operation.startswith(prefix) for prefix in self.prefixes
        )


BlockListener = Callable[[RateLimitEntry], None]


def make_key(operation: str, identity: str) -> str:
    return f"{operation}:{identity}"


def split_key(key: str) -> Tuple[str, str]:
    operation, _, identity = key.partition(":")
    return operation, identity


class RateLimiter:
    """
    In-memory limiter; one instance per client context.

    Args:
        default_policy: Policy for operations without their own entry
        policies: Per-operation overrides
        exemption: Predicate selecting exempt operations
        clock: Time source
        on_block: Called once each time a key becomes blocked
    """

    def __init__(
        self,
        default_policy: RateLimitPolicy = DEFAULT_POLICY,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        exemption: Optional[ExemptionPolicy] = None,
        clock: Clock = utcnow,
        on_block: Optional[BlockListener] = None
    ):
        self.default_policy = default_policy
        self.policies: Dict[str, RateLimitPolicy] = dict(policies or {})
        self.exemption = exemption or ExemptionPolicy()
        self._clock = clock
        self._on_block = on_block
        self._entries: Dict[str, RateLimitEntry] = {}

        # Metrics
        self._blocks = 0
        self._denied = 0

    def policy_for(self, key_or_operation: str) -> RateLimitPolicy:
        operation, _ = split_key(key_or_operation)
        return self.policies.get(operation, self.default_policy)

    def is_exempt(self, operation: str) -> bool:
        return self.exemption(operation)

    def get_entry(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def _block_running(self, entry: RateLimitEntry, policy: RateLimitPolicy, now: datetime) -> bool:
        return entry.blocked and now - entry.last_attempt_at < policy.block_duration

    def record(self, key: str) -> RateLimitEntry:
        """Count one attempt against ``key``"""
        now = self._clock()
        policy = self.policy_for(key)
        entry = self._entries.get(key)

        if entry is not None and self._block_running(entry, policy, now):
            # Blocked keys are frozen until the block ends
            return entry

        if entry is None or entry.blocked or now - entry.first_attempt_at > policy.window:
            entry = RateLimitEntry(key=key, count=1, first_attempt_at=now, last_attempt_at=now)
            self._entries[key] = entry
            return entry

        entry.count += 1
        entry.last_attempt_at = now

        if entry.count > policy.max_attempts:
            entry.blocked = True
            self._blocks += 1
            operation, identity = split_key(key)
            logger.warning(
                f"🚫 Rate limit exceeded for {operation} ({identity[:10]}...), "
                f"blocking for {policy.block_duration}"
            )
            if self._on_block:
                try:
                    self._on_block(entry)
                except Exception as e:
                    logger.error(f"Block listener failed: {e}")

        return entry

    def is_limited(self, key: str) -> bool:
        """True while ``key`` is inside a running block"""
        entry = self._entries.get(key)
        if entry is None or not entry.blocked:
            return False

        if self._block_running(entry, self.policy_for(key), self._clock()):
            return True

        logger.info(f"🔓 Block expired for {split_key(key)[0]}")
        del self._entries[key]
        return False

    def retry_after(self, key: str) -> Optional[float]:
        """Seconds until a blocked key is released, None if not blocked"""
        entry = self._entries.get(key)
        if entry is None or not entry.blocked:
            return None
        remaining = (
            entry.last_attempt_at + self.policy_for(key).block_duration - self._clock()
        ).total_seconds()
        return max(0.0, remaining)

    def check(self, operation: str, identity: str) -> RateLimitDecision:
        """Exemption, record and limit check in one step"""
        if self.is_exempt(operation):
            logger.debug(f"⚪ {operation} is exempt from rate limiting")
            return RateLimitDecision(allowed=True, exempt=True)

        key = make_key(operation, identity)
        self.record(key)
        if self.is_limited(key):
            self._denied += 1
            return RateLimitDecision(allowed=False, retry_after=self.retry_after(key))
        return RateLimitDecision(allowed=True)

    def reset(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            logger.debug(f"♻️ Rate limit entry reset for {split_key(key)[0]}")

    def clear_identity(self, identity: str) -> int:
        """Drop every entry for ``identity`` across operations"""
        keys = [k for k in self._entries if split_key(k)[1] == identity]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info(f"🧹 Cleared {len(keys)} rate limit entries for identity")
        return len(keys)

    def sweep(self) -> int:
        """Remove entries whose window or block has run out"""
        now = self._clock()
        stale = []
        for key, entry in self._entries.items():
            policy = self.policy_for(key)
            if entry.blocked:
                if not self._block_running(entry, policy, now):
                    stale.append(key)
            elif now - entry.first_attempt_at > policy.window:
                stale.append(key)

        for key in stale:
            del self._entries[key]

        if stale:
            logger.info(f"🧹 Swept {len(stale)} idle rate limit entries")
        return len(stale)

    def get_metrics(self) -> Dict[str, int]:
        return {
            "tracked_keys": len(self._entries),
            "blocked_keys": sum(1 for e in self._entries.values() if e.blocked),
            "total_blocks": self._blocks,
            "denied": self._denied,
        }
