"""
Connection pooling: one bounded pool of physical connections per endpoint.

Usage:
    pools = PoolManager(PoolSettings(max_size=4))
    with pools.lease(endpoint) as handle:
        cursor = handle.cursor()
        ...
    pools.shutdown_all()
"""

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager

from dbmigrate.config import PoolSettings
from dbmigrate.dialects import get_dialect
from dbmigrate.errors import ConnectError, ConnectTimeout, PoolError, PoolExhausted

logger = logging.getLogger(__name__)


class ConnectionHandle:
    """A leased physical connection. Returned to its pool on release, not closed."""

    def __init__(self, pool: "ConnectionPool", connection, now: float):
        self.pool = pool
        self.connection = connection
        self.created_at = now
        self.last_used = now
        self.closed = False

    @property
    def endpoint(self):
        return self.pool.endpoint

    @property
    def dialect(self):
        return self.pool.dialect

    def __repr__(self):
        return f"<ConnectionHandle {self.endpoint.label} id={id(self):#x}>"

    def cursor(self, *args, **kwargs):
        return self.connection.cursor(*args, **kwargs)

    def commit(self):
        self.connection.commit()

    def rollback(self):
        self.connection.rollback()

    def ping(self):
        try:
            self.dialect.ping(self.connection)
        except self.dialect.driver_errors as e:
            raise ConnectError(f"{self.endpoint.label} did not answer: {e}", self.endpoint) from e

    def release(self, broken: bool = False):
        self.pool.release(self, broken=broken)

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self.connection.close()
        except Exception as e:
            logger.debug("Closing connection to %s failed: %s", self.endpoint.label, e)


class ConnectionPool:
    """Bounded pool for a single endpoint.

    At most ``max_size`` handles exist at once (idle + leased + being opened).
    Idle handles beyond ``min_idle`` are evicted after ``idle_timeout``; any
    handle older than ``max_lifetime`` is retired the next time it is idle or
    released.
    """

    def __init__(self, endpoint, settings: PoolSettings, connect=None, dialect=None,
                 clock=time.monotonic):
        self.endpoint = endpoint
        self.settings = settings
        self.dialect = dialect or get_dialect(endpoint.engine)
        self._connect = connect or self.dialect.connect
        self._clock = clock
        self._cond = threading.Condition()
        self._idle: deque[ConnectionHandle] = deque()
        self._leased: set[ConnectionHandle] = set()
        self._opening = 0
        self._closed = False

    @property
    def size(self) -> int:
        return len(self._idle) + len(self._leased) + self._opening

    # ── Lifecycle ─────────────────────────────────────────────

    def warm(self):
        """Open connections until ``min_idle`` are available."""
        while True:
            with self._cond:
                if self._closed or len(self._idle) >= self.settings.min_idle \
                        or self.size >= self.settings.max_size:
                    return
                self._opening += 1
            try:
                handle = self._open(self.settings.connect_timeout)
            except ConnectError as e:
                logger.warning("Failed to pre-warm pool for %s: %s", self.endpoint.label, e)
                return
            with self._cond:
                self._idle.append(handle)
                self._cond.notify()

    def acquire(self) -> ConnectionHandle:
        deadline = self._clock() + self.settings.connect_timeout
        expired = []
        handle = None
        try:
            with self._cond:
                while True:
                    if self._closed:
                        raise PoolError(f"Pool for {self.endpoint.label} has been shut down")
                    expired.extend(self._evict_locked())
                    if self._idle:
                        handle = self._idle.pop()
                        self._leased.add(handle)
                        break
                    if self.size < self.settings.max_size:
                        self._opening += 1
                        break
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        raise PoolExhausted(
                            f"No connection to {self.endpoint.label} became free within "
                            f"{self.settings.connect_timeout}s (pool max: {self.settings.max_size})",
                            self.endpoint,
                        )
                    self._cond.wait(remaining)
        finally:
            self._close_all(expired)

        if handle is None:
            handle = self._open(max(deadline - self._clock(), 1.0))
            with self._cond:
                closed = self._closed
                if not closed:
                    self._leased.add(handle)
            if closed:
                handle.close()
                raise PoolError(f"Pool for {self.endpoint.label} has been shut down")

        handle.last_used = self._clock()
        return handle

    def release(self, handle: ConnectionHandle, broken: bool = False):
        if not broken:
            try:
                # Hand back a connection with no open transaction
                handle.rollback()
            except Exception as e:
                logger.debug("Rollback on release failed for %s: %s", self.endpoint.label, e)
                broken = True

        now = self._clock()
        with self._cond:
            if handle not in self._leased:
                raise PoolError(f"{handle!r} is not leased from this pool")
            self._leased.discard(handle)
            retire = (
                broken
                or self._closed
                or now - handle.created_at >= self.settings.max_lifetime
            )
            expired = []
            if not retire:
                handle.last_used = now
                self._idle.append(handle)
                expired = self._evict_locked()
            self._cond.notify_all()
        if retire:
            handle.close()
        self._close_all(expired)

    def shutdown(self, drain_timeout: float | None = None):
        """Stop handing out connections, wait for leased ones, then close everything."""
        if drain_timeout is None:
            drain_timeout = self.settings.connect_timeout
        deadline = self._clock() + drain_timeout
        with self._cond:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._cond.notify_all()
        self._close_all(idle)

        with self._cond:
            while self._leased:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            leftovers = list(self._leased)
            self._leased.clear()
        if leftovers:
            logger.warning(
                "Closing %d connection(s) to %s that were still leased at shutdown",
                len(leftovers), self.endpoint.label,
            )
        self._close_all(leftovers)

    def stats(self) -> dict:
        with self._cond:
            return {
                "total": self.size,
                "idle": len(self._idle),
                "leased": len(self._leased),
                "max": self.settings.max_size,
            }

    # ── Internals ─────────────────────────────────────────────

    def _open(self, timeout: float) -> ConnectionHandle:
        try:
            connection = self._connect(self.endpoint, timeout)
        except Exception as e:
            with self._cond:
                self._opening -= 1
                self._cond.notify()
            if self.dialect.is_timeout(e):
                raise ConnectTimeout(
                    f"Connecting to {self.endpoint.label} timed out after {timeout:.0f}s: {e}",
                    self.endpoint,
                ) from e
            raise ConnectError(f"Cannot connect to {self.endpoint.label}: {e}", self.endpoint) from e

        with self._cond:
            self._opening -= 1
        logger.debug("Opened connection to %s", self.endpoint.label)
        return ConnectionHandle(self, connection, self._clock())

    def _evict_locked(self) -> list[ConnectionHandle]:
        now = self._clock()
        keep = deque()
        evicted = []
        for handle in self._idle:
            if now - handle.created_at >= self.settings.max_lifetime:
                evicted.append(handle)
            else:
                keep.append(handle)
        # oldest-used first, so the pool shrinks from the cold end
        for handle in sorted(keep, key=lambda h: h.last_used):
            if len(keep) <= self.settings.min_idle:
                break
            if now - handle.last_used >= self.settings.idle_timeout:
                keep.remove(handle)
                evicted.append(handle)
        self._idle = keep
        return evicted

    @staticmethod
    def _close_all(handles):
        for handle in handles:
            handle.close()


class PoolManager:
    """Owns one independent ConnectionPool per endpoint."""

    def __init__(self, settings: PoolSettings | None = None, connect=None, clock=time.monotonic):
        self.settings = settings or PoolSettings()
        self._connect = connect
        self._clock = clock
        self._pools: dict = {}
        self._shut_down = set()
        self._closed = False
        self._lock = threading.Lock()

    def pool(self, endpoint) -> ConnectionPool:
        with self._lock:
            if self._closed or endpoint in self._shut_down:
                raise PoolError(f"Pool for {endpoint.label} has been shut down")
            pool = self._pools.get(endpoint)
            created = pool is None
            if created:
                pool = ConnectionPool(endpoint, self.settings, connect=self._connect, clock=self._clock)
                self._pools[endpoint] = pool
        if created:
            logger.info(
                "Connection pool for %s: min_idle=%d, max_size=%d",
                endpoint.label, self.settings.min_idle, self.settings.max_size,
            )
            pool.warm()
        return pool

    def acquire(self, endpoint) -> ConnectionHandle:
        return self.pool(endpoint).acquire()

    def release(self, handle: ConnectionHandle, broken: bool = False):
        handle.pool.release(handle, broken=broken)

    @contextmanager
    def lease(self, endpoint):
        handle = self.acquire(endpoint)
        try:
            yield handle
        finally:
            self.release(handle)

    def shutdown(self, endpoint, drain_timeout: float | None = None):
        with self._lock:
            pool = self._pools.pop(endpoint, None)
            self._shut_down.add(endpoint)
        if pool is not None:
            pool.shutdown(drain_timeout)
            logger.info("Connection pool for %s closed", endpoint.label)

    def shutdown_all(self, drain_timeout: float | None = None):
        with self._lock:
            self._closed = True
            endpoints = list(self._pools)
        for endpoint in endpoints:
            self.shutdown(endpoint, drain_timeout)

    def stats(self, endpoint) -> dict:
        return self.pool(endpoint).stats()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown_all()
