"""
Per-(source, region) sync lease.

At most one sync job may run for a given pair. A second request fails fast
with ConcurrencyConflict instead of queueing behind the first.
"""
import abc
import logging
import threading
from typing import Dict, Optional, Set, Tuple

import redis

import config

logger = logging.getLogger(__name__)


class ConcurrencyConflict(Exception):
    """A sync job is already in flight for this (source, region) pair."""
    pass


def lock_key(source_id: str, region: str) -> str:
    return f"surveillance:sync-lock:{source_id}:{region}"


def cancel_key(source_id: str, region: str) -> str:
    return f"surveillance:sync-cancel:{source_id}:{region}"


class SyncLease(abc.ABC):
    def __init__(self, source_id: str, region: str):
        self.source_id = source_id
        self.region = region

    @abc.abstractmethod
    def cancel_requested(self) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def renew(self) -> None:
        """Restart the lease TTL, or raise ConcurrencyConflict if the lease was lost."""
        raise NotImplementedError

    @abc.abstractmethod
    def release(self) -> None:
        raise NotImplementedError


class AbstractSyncLockManager(abc.ABC):
    @abc.abstractmethod
    def acquire(self, source_id: str, region: str) -> SyncLease:
        """Take the lease or raise ConcurrencyConflict."""
        raise NotImplementedError

    @abc.abstractmethod
    def request_cancel(self, source_id: str, region: str) -> bool:
        """Flag the in-flight job for cancellation. False if nothing is running."""
        raise NotImplementedError


class RedisSyncLease(SyncLease):
    def __init__(self, client, lock, source_id, region):
        super().__init__(source_id, region)
        self.client = client
        self.lock = lock

    def cancel_requested(self) -> bool:
        return bool(self.client.exists(cancel_key(self.source_id, self.region)))

    def renew(self) -> None:
        try:
            self.lock.reacquire()
        except redis.exceptions.LockError as e:
            raise ConcurrencyConflict(
                f"Sync lease for {self.source_id}/{self.region} expired and may be held by another worker"
            ) from e

    def release(self) -> None:
        self.client.delete(cancel_key(self.source_id, self.region))
        try:
            self.lock.release()
        except redis.exceptions.LockError as e:
            # The lease expired under us; another worker may already hold it.
            logger.warning(f"Sync lease {self.source_id}/{self.region} was lost before release: {e}")


class RedisSyncLockManager(AbstractSyncLockManager):
    """Lease shared by every worker that talks to the same Redis."""

    def __init__(self, client=None, ttl_seconds: Optional[int] = None):
        self.client = client or redis.Redis(**config.get_redis_host_and_port())
        self.ttl_seconds = ttl_seconds or config.get_sync_lock_config()["ttl_seconds"]

    def acquire(self, source_id: str, region: str) -> SyncLease:
        lock = self.client.lock(lock_key(source_id, region), timeout=self.ttl_seconds)
        if not lock.acquire(blocking=False):
            raise ConcurrencyConflict(f"A sync job for {source_id}/{region} is already running")
        self.client.delete(cancel_key(source_id, region))
        logger.info(f"Acquired sync lease for {source_id}/{region}")
        return RedisSyncLease(self.client, lock, source_id, region)

    def request_cancel(self, source_id: str, region: str) -> bool:
        if not self.client.exists(lock_key(source_id, region)):
            return False
        self.client.set(cancel_key(source_id, region), "1", ex=self.ttl_seconds)
        logger.info(f"Cancellation requested for sync {source_id}/{region}")
        return True


class InMemorySyncLease(SyncLease):
    def __init__(self, manager, source_id, region):
        super().__init__(source_id, region)
        self.manager = manager

    def cancel_requested(self) -> bool:
        with self.manager.mutex:
            return (self.source_id, self.region) in self.manager.cancelled

    def renew(self) -> None:
        with self.manager.mutex:
            if self.manager.held.get((self.source_id, self.region)) is not self:
                raise ConcurrencyConflict(f"Sync lease for {self.source_id}/{self.region} is no longer held")

    def release(self) -> None:
        key = (self.source_id, self.region)
        with self.manager.mutex:
            if self.manager.held.get(key) is self:
                del self.manager.held[key]
                self.manager.cancelled.discard(key)


class InMemorySyncLockManager(AbstractSyncLockManager):
    """Process-local lease for single-worker deployments and tests."""

    def __init__(self):
        self.mutex = threading.Lock()
        self.held = {}  # type: Dict[Tuple[str, str], InMemorySyncLease]
        self.cancelled = set()  # type: Set[Tuple[str, str]]

    def acquire(self, source_id: str, region: str) -> SyncLease:
        key = (source_id, region)
        with self.mutex:
            if key in self.held:
                raise ConcurrencyConflict(f"A sync job for {source_id}/{region} is already running")
            lease = InMemorySyncLease(self, source_id, region)
            self.held[key] = lease
            self.cancelled.discard(key)
        return lease

    def request_cancel(self, source_id: str, region: str) -> bool:
        key = (source_id, region)
        with self.mutex:
            if key not in self.held:
                return False
            self.cancelled.add(key)
        return True


_MANAGERS = {}  # type: Dict[str, AbstractSyncLockManager]


def default_lock_manager() -> AbstractSyncLockManager:
    """Lock manager for the configured backend, shared within the process."""
    backend = config.get_sync_lock_config()["backend"]
    if backend not in _MANAGERS:
        if backend == "memory":
            _MANAGERS[backend] = InMemorySyncLockManager()
        elif backend == "redis":
            _MANAGERS[backend] = RedisSyncLockManager()
        else:
            raise ValueError(f"Unknown sync lock backend {backend!r}")
    return _MANAGERS[backend]
