import logging
import threading
import time
from typing import Callable, Dict, Protocol, Tuple

import redis

from booking_guard.config import Config
from booking_guard.db import SqlAttemptStore
from booking_guard.errors import StoreUnavailableError
from booking_guard.models import AttemptRecord

logger = logging.getLogger(__name__)

Transition = Callable[[AttemptRecord | None], AttemptRecord | None]


class AttemptStore(Protocol):
    """Storage capability the lockout guard is built on.

    ``update`` is the only operation that must be atomic: it reads the current
    record, hands it to ``transition`` and writes back whatever comes out
    (``None`` deletes the record), returning the record before and after.
    ``transition`` must be pure since some stores retry it on contention.
    """

    def now(self) -> float: ...

    def get(self, subject_id: str, now: float) -> AttemptRecord | None: ...

    def set(self, record: AttemptRecord) -> None: ...

    def delete(self, subject_id: str) -> None: ...

    def update(
        self, subject_id: str, transition: Transition, now: float
    ) -> Tuple[AttemptRecord | None, AttemptRecord | None]: ...

    def purge_expired(self, now: float) -> int: ...


class InMemoryAttemptStore:
    def __init__(self):
        self.records: Dict[str, AttemptRecord] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return time.time()

    def _live(self, subject_id: str, now: float) -> AttemptRecord | None:
        record = self.records.get(subject_id)
        if record is not None and record.is_expired(now):
            self.records.pop(subject_id, None)
            return None
        return record

    def get(self, subject_id: str, now: float) -> AttemptRecord | None:
        with self._lock:
            return self._live(subject_id, now)

    def set(self, record: AttemptRecord) -> None:
        with self._lock:
            self.records[record.subject_id] = record

    def delete(self, subject_id: str) -> None:
        with self._lock:
            self.records.pop(subject_id, None)

    def update(self, subject_id: str, transition: Transition, now: float):
        with self._lock:
            before = self._live(subject_id, now)
            after = transition(before)
            if after is None:
                self.records.pop(subject_id, None)
            else:
                self.records[subject_id] = after
            return before, after

    def purge_expired(self, now: float) -> int:
        with self._lock:
            dead = [key for key, record in self.records.items() if record.is_expired(now)]
            for key in dead:
                del self.records[key]
            return len(dead)


def _encode_record(record: AttemptRecord) -> Dict[str, str]:
    return {
        "failure_count": str(record.failure_count),
        "locked_until": "" if record.locked_until is None else repr(record.locked_until),
        "updated_at": repr(record.updated_at),
        "expires_at": "" if record.expires_at is None else repr(record.expires_at),
    }


def _decode_record(subject_id: str, raw: Dict[str, str] | None) -> AttemptRecord | None:
    if not raw:
        return None
    locked_until = raw.get("locked_until") or None
    expires_at = raw.get("expires_at") or None
    return AttemptRecord(
        subject_id=subject_id,
        failure_count=int(raw.get("failure_count") or 0),
        locked_until=float(locked_until) if locked_until is not None else None,
        updated_at=float(raw.get("updated_at") or 0.0),
        expires_at=float(expires_at) if expires_at is not None else None,
    )


class RedisAttemptStore:
    """One hash per subject; Redis evicts it ``expires_at - updated_at`` after the write."""

    def __init__(self, client: redis.Redis, key_prefix: str = "booking-guard:booking-code"):
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_config(cls, cfg: Config) -> "RedisAttemptStore":
        client = redis.Redis(
            host=cfg.redis_host,
            port=cfg.redis_port,
            db=cfg.redis_db,
            password=cfg.redis_password or None,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=3,
        )
        return cls(client, cfg.key_prefix)

    def key(self, subject_id: str) -> str:
        return f"{self.key_prefix}:{subject_id}"

    def _call(self, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis: {type(exc).__name__} {exc}") from exc

    def _write(self, pipe, key: str, record: AttemptRecord | None) -> None:
        pipe.delete(key)
        if record is None:
            return
        if record.expires_at is None:
            pipe.hset(key, mapping=_encode_record(record))
            return
        # TTL is relative to the record's own clock, so a guard with an
        # injected clock and the Redis server clock never disagree
        ttl_ms = int((record.expires_at - record.updated_at) * 1000)
        if ttl_ms <= 0:
            return
        pipe.hset(key, mapping=_encode_record(record))
        pipe.pexpire(key, ttl_ms)

    def now(self) -> float:
        # server clock, shared by every process using this store
        seconds, micros = self._call(self.client.time)
        return seconds + micros / 1_000_000

    def get(self, subject_id: str, now: float) -> AttemptRecord | None:
        record = _decode_record(subject_id, self._call(self.client.hgetall, self.key(subject_id)))
        if record is not None and record.is_expired(now):
            return None
        return record

    def set(self, record: AttemptRecord) -> None:
        pipe = self.client.pipeline()
        self._write(pipe, self.key(record.subject_id), record)
        self._call(pipe.execute)

    def delete(self, subject_id: str) -> None:
        self._call(self.client.delete, self.key(subject_id))

    def update(self, subject_id: str, transition: Transition, now: float):
        key = self.key(subject_id)

        def apply(pipe):
            before = _decode_record(subject_id, pipe.hgetall(key))
            if before is not None and before.is_expired(now):
                before = None
            after = transition(before)
            pipe.multi()
            self._write(pipe, key, after)
            return before, after

        return self._call(self.client.transaction, apply, key, value_from_callable=True)

    def purge_expired(self, now: float) -> int:
        return 0


class FallbackAttemptStore:
    """Serves from ``secondary`` whenever ``primary`` is unreachable.

    ``degraded`` reports whether the calling thread's last operation was
    served by the secondary store.
    """

    def __init__(self, primary: AttemptStore, secondary: AttemptStore):
        self.primary = primary
        self.secondary = secondary
        self._local = threading.local()

    @property
    def degraded(self) -> bool:
        return getattr(self._local, "degraded", False)

    def _run(self, name: str, *args):
        try:
            result = getattr(self.primary, name)(*args)
        except StoreUnavailableError as exc:
            logger.warning("primary attempt store unavailable, using fallback for %s: %s", name, exc)
            self._local.degraded = True
            return getattr(self.secondary, name)(*args)
        self._local.degraded = False
        return result

    def now(self) -> float:
        return self._run("now")

    def get(self, subject_id: str, now: float) -> AttemptRecord | None:
        return self._run("get", subject_id, now)

    def set(self, record: AttemptRecord) -> None:
        self._run("set", record)

    def delete(self, subject_id: str) -> None:
        self._run("delete", subject_id)

    def update(self, subject_id: str, transition: Transition, now: float):
        return self._run("update", subject_id, transition, now)

    def purge_expired(self, now: float) -> int:
        return self._run("purge_expired", now)


def build_store(cfg: Config) -> AttemptStore:
    backend = cfg.store_backend.lower()
    if backend == "memory":
        return InMemoryAttemptStore()
    if backend == "redis":
        store = RedisAttemptStore.from_config(cfg)
        if cfg.redis_fallback_to_memory:
            return FallbackAttemptStore(store, InMemoryAttemptStore())
        return store
    if backend == "sql":
        return SqlAttemptStore(cfg.db_url)
    raise ValueError(f"Unsupported store backend: {cfg.store_backend}")
