"""Adaptive, behavior-tiered rate limiting with auto-block.

User ids and IPs are tracked in two independent :class:`IdentityStore`
maps. Each store owns one lock; every read-modify-write on an identity
runs inside that lock, so a quota check and its increment form a single
critical section. When both maps are needed the user lock is always
taken before the IP lock.

Blocks expire lazily: the first request observed at or after
``blocked_until`` clears the block and resets that identity's window.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace

from llm_shield.config import RateLimitConfig, TierLimit
from llm_shield.exceptions import ConfigurationError
from llm_shield.logging import get_logger
from llm_shield.security.models import (
    BlockedEntity,
    BlockedList,
    IdentityActivity,
    IdentityKind,
    RateLimitDecision,
    RateLimitTier,
)

log = get_logger("llm_shield.security.rate_limiter")

_USER_BLOCKED_REASON = "User temporarily blocked due to suspicious activity"
_IP_BLOCKED_REASON = "IP temporarily blocked due to suspicious activity"
_AUTO_BLOCK_REASON = "Automatically blocked after repeated attacks"
_MANUAL_BLOCK_REASON = "Blocked by administrator"


class IdentityStore:
    """A lock-protected map of identity to :class:`IdentityActivity`.

    Methods other than those taking the lock themselves expect the caller
    to hold :attr:`lock`.
    """

    def __init__(self, kind: IdentityKind) -> None:
        self.kind = kind
        self.lock = threading.RLock()
        self._activities: dict[str, IdentityActivity] = {}

    def get(self, identity: str) -> IdentityActivity | None:
        return self._activities.get(identity)

    def get_or_create(self, identity: str, now: float) -> IdentityActivity:
        activity = self._activities.get(identity)
        if activity is None:
            activity = IdentityActivity(window_start=now, last_request=now)
            self._activities[identity] = activity
        return activity

    def delete(self, identity: str) -> None:
        self._activities.pop(identity, None)

    def items(self) -> Iterator[tuple[str, IdentityActivity]]:
        return iter(list(self._activities.items()))

    def snapshot(self, identity: str) -> IdentityActivity | None:
        """Return a copy of an identity's state, taken under the lock."""
        with self.lock:
            activity = self._activities.get(identity)
            return replace(activity) if activity is not None else None

    def clear(self) -> None:
        with self.lock:
            self._activities.clear()

    def __len__(self) -> int:
        return len(self._activities)


@dataclass
class _Behavior:
    avg_risk_score: float = 0.0
    attack_rate: float = 0.0
    block_rate: float = 0.0


@dataclass
class RateLimiterStats:
    """Snapshot of limiter state for monitoring."""

    total_users: int
    total_ips: int
    blocked_users: int
    blocked_ips: int
    avg_requests_per_user: float


class AdaptiveRateLimiter:
    """Per-identity sliding-window limiter with behavior-derived tiers."""

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        user_store: IdentityStore | None = None,
        ip_store: IdentityStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            config: Tier quotas, escalation thresholds and retention.
            user_store: Store for user identities (created if omitted).
            ip_store: Store for IP identities (created if omitted).
            clock: Source of the current time in seconds.
        """
        self._config = config or RateLimitConfig()
        self._users = user_store if user_store is not None else IdentityStore(IdentityKind.USER)
        self._ips = ip_store if ip_store is not None else IdentityStore(IdentityKind.IP)
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _store(self, kind: IdentityKind) -> IdentityStore:
        return self._users if kind == IdentityKind.USER else self._ips

    # ------------------------------------------------------------------
    # Request gate
    # ------------------------------------------------------------------

    def check_rate_limit(
        self, user_id: str, ip: str, risk_score: float = 0.0
    ) -> RateLimitDecision:
        """Gate one request and count it against the user's quota.

        Args:
            user_id: Caller-supplied user id (trusted).
            ip: Caller-supplied IP address (trusted).
            risk_score: Risk score known at gate time (0 before scoring).

        Returns:
            A :class:`RateLimitDecision`. Denied decisions carry a reason
            and ``retry_after`` in seconds.
        """
        with self._users.lock, self._ips.lock:
            now = self._clock()
            user_activity = self._users.get(user_id)
            ip_activity = self._ips.get(ip)

            user_retry = self._active_block(user_activity, now, user_id, IdentityKind.USER)
            ip_retry = self._active_block(ip_activity, now, ip, IdentityKind.IP)

            tier = self._determine_tier(self._behavior(user_activity), risk_score)

            if user_retry is not None:
                assert user_activity is not None  # nosec B101
                return RateLimitDecision(
                    allowed=False,
                    tier=RateLimitTier.MALICIOUS,
                    reason=user_activity.block_reason or _USER_BLOCKED_REASON,
                    retry_after=user_retry,
                )
            if ip_retry is not None:
                assert ip_activity is not None  # nosec B101
                return RateLimitDecision(
                    allowed=False,
                    tier=RateLimitTier.MALICIOUS,
                    reason=ip_activity.block_reason or _IP_BLOCKED_REASON,
                    retry_after=ip_retry,
                )

            limit = self._limit_for(tier)
            activity = self._users.get_or_create(user_id, now)
            self._roll_window(activity, limit, now)

            if activity.request_count >= limit.max_requests:
                reason = (
                    f"Rate limit exceeded: {limit.max_requests} requests per "
                    f"{limit.window_seconds:g}s ({tier.value} tier)"
                )
                self._block(activity, now, limit.block_duration_seconds, reason)
                log.warning(
                    "rate_limit_exceeded",
                    user_id=user_id,
                    ip=ip,
                    tier=tier.value,
                    block_seconds=limit.block_duration_seconds,
                )
                return RateLimitDecision(
                    allowed=False,
                    tier=tier,
                    reason=reason,
                    retry_after=math.ceil(limit.block_duration_seconds),
                )

            activity.request_count += 1
            activity.last_request = now
            activity.risk_score_sum += risk_score

            ip_record = self._ips.get_or_create(ip, now)
            self._roll_window(ip_record, limit, now)
            ip_record.request_count += 1
            ip_record.last_request = now

            return RateLimitDecision(allowed=True, tier=tier)

    def _active_block(
        self,
        activity: IdentityActivity | None,
        now: float,
        identity: str,
        kind: IdentityKind,
    ) -> int | None:
        """Return seconds left on an active block, lazily clearing expired ones."""
        if activity is None or not activity.blocked:
            return None
        if now >= activity.blocked_until:
            activity.blocked = False
            activity.blocked_until = 0.0
            activity.block_reason = ""
            activity.request_count = 0
            activity.window_start = now
            activity.risk_score_sum = 0.0
            log.info("identity_block_expired", identity=identity, kind=kind.value)
            return None
        return max(1, math.ceil(activity.blocked_until - now))

    @staticmethod
    def _roll_window(activity: IdentityActivity, limit: TierLimit, now: float) -> None:
        if now - activity.window_start > limit.window_seconds:
            activity.request_count = 0
            activity.window_start = now
            activity.risk_score_sum = 0.0

    @staticmethod
    def _block(activity: IdentityActivity, now: float, duration: float, reason: str) -> None:
        activity.blocked = True
        activity.blocked_until = max(
            now + duration, activity.blocked_until if activity.blocked else 0.0
        )
        activity.block_reason = reason

    @staticmethod
    def _behavior(activity: IdentityActivity | None) -> _Behavior:
        if activity is None or activity.request_count == 0:
            return _Behavior()
        n = activity.request_count
        return _Behavior(
            avg_risk_score=activity.risk_score_sum / n,
            attack_rate=activity.attack_count / n,
            block_rate=activity.block_count / n,
        )

    def _determine_tier(self, behavior: _Behavior, current_risk: float) -> RateLimitTier:
        cfg = self._config
        if (
            behavior.attack_rate > cfg.malicious_attack_rate
            or behavior.block_rate > cfg.malicious_block_rate
        ):
            return RateLimitTier.MALICIOUS
        if (
            behavior.avg_risk_score > cfg.suspicious_avg_risk
            or current_risk > cfg.suspicious_current_risk
        ):
            return RateLimitTier.SUSPICIOUS
        return RateLimitTier.NORMAL

    def _limit_for(self, tier: RateLimitTier) -> TierLimit:
        if tier == RateLimitTier.MALICIOUS:
            return self._config.malicious
        if tier == RateLimitTier.SUSPICIOUS:
            return self._config.suspicious
        return self._config.normal

    # ------------------------------------------------------------------
    # Attack bookkeeping
    # ------------------------------------------------------------------

    def record_risk(self, user_id: str, risk_score: float) -> None:
        """Add a post-analysis risk score to the user's running average.

        The gate runs before scoring, so without this the average risk that
        drives the suspicious tier would only ever see gate-time scores.
        """
        with self._users.lock:
            activity = self._users.get(user_id)
            if activity is not None:
                activity.risk_score_sum += risk_score

    def record_attack(self, user_id: str, ip: str, blocked: bool) -> None:
        """Count an attack against both identities and auto-block repeat offenders.

        A user with at least ``user_auto_block_attacks`` attacks of which
        ``user_auto_block_blocks`` were blocked, or an IP with at least
        ``ip_auto_block_attacks`` attacks, is blocked for the malicious-tier
        duration regardless of its quota.
        """
        cfg = self._config
        duration = cfg.malicious.block_duration_seconds
        with self._users.lock, self._ips.lock:
            now = self._clock()
            user = self._users.get_or_create(user_id, now)
            user.attack_count += 1
            user.last_request = now
            if blocked:
                user.block_count += 1

            ip_activity = self._ips.get_or_create(ip, now)
            ip_activity.attack_count += 1
            ip_activity.last_request = now
            if blocked:
                ip_activity.block_count += 1

            if (
                user.attack_count >= cfg.user_auto_block_attacks
                and user.block_count >= cfg.user_auto_block_blocks
            ):
                self._block(user, now, duration, _AUTO_BLOCK_REASON)
                log.warning(
                    "user_auto_blocked",
                    user_id=user_id,
                    attacks=user.attack_count,
                    blocks=user.block_count,
                )

            if ip_activity.attack_count >= cfg.ip_auto_block_attacks:
                self._block(ip_activity, now, duration, _AUTO_BLOCK_REASON)
                log.warning("ip_auto_blocked", ip=ip, attacks=ip_activity.attack_count)

    # ------------------------------------------------------------------
    # Administrative surface
    # ------------------------------------------------------------------

    def _manual_block(
        self, kind: IdentityKind, identity: str, duration_seconds: float, reason: str | None
    ) -> None:
        if not math.isfinite(duration_seconds) or duration_seconds <= 0:
            raise ConfigurationError(
                f"Block duration must be a positive number of seconds, got {duration_seconds}"
            )
        store = self._store(kind)
        with store.lock:
            now = self._clock()
            activity = store.get_or_create(identity, now)
            already_blocked = activity.blocked and activity.blocked_until > now
            self._block(activity, now, duration_seconds, reason or _MANUAL_BLOCK_REASON)
            if not already_blocked:
                activity.block_count += 1
        log.info("identity_blocked", identity=identity, kind=kind.value, seconds=duration_seconds)

    def _manual_unblock(self, kind: IdentityKind, identity: str) -> None:
        store = self._store(kind)
        with store.lock:
            activity = store.get(identity)
            if activity is not None:
                activity.blocked = False
                activity.blocked_until = 0.0
                activity.block_reason = ""
        log.info("identity_unblocked", identity=identity, kind=kind.value)

    def block_user(
        self, user_id: str, duration_seconds: float, reason: str | None = None
    ) -> BlockedList:
        """Block a user id; repeating the call never shortens an active block.

        Args:
            user_id: User to block.
            duration_seconds: Block length.
            reason: Reason returned to the blocked caller.

        Raises:
            ConfigurationError: If *duration_seconds* is not positive.
        """
        self._manual_block(IdentityKind.USER, user_id, duration_seconds, reason)
        return self.get_blocked_list()

    def block_ip(
        self, ip: str, duration_seconds: float, reason: str | None = None
    ) -> BlockedList:
        """Block an IP; repeating the call never shortens an active block.

        Raises:
            ConfigurationError: If *duration_seconds* is not positive.
        """
        self._manual_block(IdentityKind.IP, ip, duration_seconds, reason)
        return self.get_blocked_list()

    def unblock_user(self, user_id: str) -> BlockedList:
        """Lift any block on a user id."""
        self._manual_unblock(IdentityKind.USER, user_id)
        return self.get_blocked_list()

    def unblock_ip(self, ip: str) -> BlockedList:
        """Lift any block on an IP."""
        self._manual_unblock(IdentityKind.IP, ip)
        return self.get_blocked_list()

    def is_blocked(self, kind: IdentityKind, identity: str) -> bool:
        store = self._store(kind)
        with store.lock:
            activity = store.get(identity)
            return (
                activity is not None
                and activity.blocked
                and activity.blocked_until > self._clock()
            )

    def get_activity(self, kind: IdentityKind, identity: str) -> IdentityActivity | None:
        """Return a copy of an identity's state."""
        return self._store(kind).snapshot(identity)

    def get_blocked_list(self) -> BlockedList:
        """List currently blocked users and IPs with time remaining."""
        result = BlockedList()
        for store, target in ((self._users, result.users), (self._ips, result.ips)):
            with store.lock:
                now = self._clock()
                for identity, activity in store.items():
                    if activity.blocked and activity.blocked_until > now:
                        target.append(
                            BlockedEntity(
                                identity=identity,
                                kind=store.kind,
                                blocked_until=activity.blocked_until,
                                remaining_seconds=math.ceil(activity.blocked_until - now),
                                attack_count=activity.attack_count,
                            )
                        )
        return result

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_stats(self) -> RateLimiterStats:
        """Summarize tracked identities."""
        with self._users.lock, self._ips.lock:
            now = self._clock()
            users = [a for _, a in self._users.items()]
            ips = [a for _, a in self._ips.items()]
        total_requests = sum(a.request_count for a in users)
        return RateLimiterStats(
            total_users=len(users),
            total_ips=len(ips),
            blocked_users=sum(1 for a in users if a.blocked and a.blocked_until > now),
            blocked_ips=sum(1 for a in ips if a.blocked and a.blocked_until > now),
            avg_requests_per_user=total_requests / len(users) if users else 0.0,
        )

    def cleanup(self, max_age_seconds: float | None = None) -> int:
        """Evict identities inactive longer than *max_age_seconds*.

        Currently blocked identities are never evicted.

        Returns:
            Number of identities removed across both maps.
        """
        max_age = max_age_seconds if max_age_seconds is not None else self._config.retention_seconds
        removed = 0
        for store in (self._users, self._ips):
            with store.lock:
                now = self._clock()
                for identity, activity in store.items():
                    currently_blocked = activity.blocked and activity.blocked_until > now
                    if now - activity.last_request > max_age and not currently_blocked:
                        store.delete(identity)
                        removed += 1
        if removed:
            log.debug("rate_limiter_cleanup", removed=removed)
        return removed

    def reset(self) -> None:
        """Forget all identities."""
        self._users.clear()
        self._ips.clear()
