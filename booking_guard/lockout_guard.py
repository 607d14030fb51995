"""Brute-force guard around booking-code verification.

A subject (usually an owner id) gets ``max_attempts`` consecutive wrong codes
before it is locked out for ``lockout_duration_s``. Expiry is never pushed by a
timer: the status is recomputed from the stored record and the current time on
every call, so a lapsed lock simply reads as unlocked.
"""
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from booking_guard.config import Config
from booking_guard.errors import InvalidSubjectError, StoreUnavailableError
from booking_guard.models import AttemptRecord, FailureResult, LockoutStatus
from booking_guard.stores import AttemptStore, build_store

logger = logging.getLogger(__name__)


class FailPolicy(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    RAISE = "raise"


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 3
    lockout_duration_s: float = 300
    # idle time after which a failure streak is forgotten; None keeps it forever
    failure_streak_ttl_s: float | None = 900

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.lockout_duration_s <= 0:
            raise ValueError("lockout_duration_s must be positive")
        if self.failure_streak_ttl_s is not None and self.failure_streak_ttl_s <= 0:
            raise ValueError("failure_streak_ttl_s must be positive or None")


def normalize_subject(subject_id) -> str:
    if isinstance(subject_id, bool) or not isinstance(subject_id, (str, int)):
        raise InvalidSubjectError(f"unsupported subject id type: {type(subject_id).__name__}")
    key = str(subject_id).strip()
    if not key:
        raise InvalidSubjectError("subject id must not be empty")
    return key


def live_record(record: AttemptRecord | None, now: float, policy: LockoutPolicy) -> AttemptRecord | None:
    """Return ``record`` with stale state dropped, or None if nothing is left."""
    if record is None:
        return None
    if record.locked_until is not None:
        return record if record.is_locked(now) else None
    if record.failure_count <= 0:
        return None
    ttl = policy.failure_streak_ttl_s
    if ttl is not None and now - record.updated_at > ttl:
        return None
    return record


def evaluate(record: AttemptRecord | None, now: float, policy: LockoutPolicy) -> LockoutStatus:
    record = live_record(record, now, policy)
    if record is not None and record.is_locked(now):
        return LockoutStatus(
            locked=True,
            remaining_attempts=0,
            locked_until=record.locked_until,
            retry_after_s=math.ceil(record.locked_until - now),
            failures=0,
        )
    failures = record.failure_count if record is not None else 0
    return LockoutStatus(
        locked=False,
        remaining_attempts=max(0, policy.max_attempts - failures),
        failures=failures,
    )


def next_failure(subject_id: str, record: AttemptRecord | None, now: float, policy: LockoutPolicy) -> AttemptRecord:
    record = live_record(record, now, policy)
    if record is not None and record.is_locked(now):
        return record

    count = (record.failure_count if record is not None else 0) + 1
    if count >= policy.max_attempts:
        until = now + policy.lockout_duration_s
        return AttemptRecord(subject_id, failure_count=0, locked_until=until, updated_at=now, expires_at=until)

    ttl = policy.failure_streak_ttl_s
    return AttemptRecord(
        subject_id,
        failure_count=count,
        updated_at=now,
        expires_at=now + ttl if ttl is not None else None,
    )


class LockoutGuard:
    def __init__(
        self,
        store: AttemptStore,
        policy: LockoutPolicy | None = None,
        clock: Callable[[], float] | None = None,
        fail_policy: FailPolicy = FailPolicy.CLOSED,
    ):
        self.store = store
        self.policy = policy or LockoutPolicy()
        self.clock = clock or store.now
        self.fail_policy = FailPolicy(fail_policy)

    def _unavailable(self, subject_id: str, exc: StoreUnavailableError, result_cls):
        logger.warning("attempt store unavailable for subject %s (%s): %s", subject_id, self.fail_policy.value, exc)
        if self.fail_policy is FailPolicy.RAISE:
            raise exc
        if self.fail_policy is FailPolicy.OPEN:
            return result_cls(locked=False, remaining_attempts=self.policy.max_attempts, store_available=False)
        return result_cls(locked=True, remaining_attempts=0, store_available=False)

    def record_failure(self, subject_id) -> FailureResult:
        key = normalize_subject(subject_id)
        try:
            now = self.clock()
            before, after = self.store.update(key, lambda record: next_failure(key, record, now, self.policy), now)
        except StoreUnavailableError as exc:
            return self._unavailable(key, exc, FailureResult)

        previous = live_record(before, now, self.policy)
        status = evaluate(after, now, self.policy)
        just_locked = status.locked and not (previous is not None and previous.is_locked(now))
        if just_locked:
            logger.info("subject %s locked out until %.3f", key, status.locked_until)
        return FailureResult(**status.model_dump(exclude={"degraded"}), just_locked=just_locked, degraded=self._degraded())

    def get_lockout_status(self, subject_id) -> LockoutStatus:
        key = normalize_subject(subject_id)
        try:
            now = self.clock()
            record = self.store.get(key, now)
        except StoreUnavailableError as exc:
            return self._unavailable(key, exc, LockoutStatus)
        status = evaluate(record, now, self.policy)
        status.degraded = self._degraded()
        return status

    def _degraded(self) -> bool:
        return getattr(self.store, "degraded", False)

    def clear_booking_code_failures(self, subject_id) -> None:
        # no status to carry a store outage, so StoreUnavailableError propagates
        self.store.delete(normalize_subject(subject_id))

    def purge_expired(self) -> int:
        return self.store.purge_expired(self.clock())


def build_guard(cfg: Config, store: AttemptStore | None = None) -> LockoutGuard:
    policy = LockoutPolicy(
        max_attempts=cfg.max_attempts,
        lockout_duration_s=cfg.lockout_duration_s,
        failure_streak_ttl_s=cfg.failure_streak_ttl_s,
    )
    return LockoutGuard(store or build_store(cfg), policy, fail_policy=FailPolicy(cfg.fail_policy.lower()))
