# locks.py — the single global lock around dedup-check-then-append
import threading
import time
import zlib
from typing import Any, Callable

from psycopg_pool import PoolTimeout


class LockTimeout(RuntimeError):
    pass


def lock_key(name: str) -> int:
    """Stable signed 32-bit key for pg advisory locks."""
    k = zlib.crc32(name.encode("utf-8"))
    return k - (1 << 32) if k >= (1 << 31) else k


class ThreadLock:
    """In-process provider. Enough when a single worker process serves the quiz."""

    def __init__(self, name: str = "quiz-submissions"):
        self.name = name
        self._lock = threading.Lock()
        self._owner = threading.local()

    def acquire(self, timeout_ms: int) -> None:
        if not self._lock.acquire(timeout=max(0, timeout_ms) / 1000.0):
            raise LockTimeout(f"could not acquire '{self.name}' within {timeout_ms} ms")
        self._owner.held = True

    def release(self) -> None:
        if not getattr(self._owner, "held", False):
            return
        self._owner.held = False
        self._lock.release()


class PgAdvisoryLock:
    """
    Session-level Postgres advisory lock. Each poll borrows a pooled
    connection and hands it back on a miss, so waiters never sit on the slots
    the lock holder needs for its own queries. The connection that took the
    lock stays checked out of the pool until release().
    """

    def __init__(self, get_pool: Callable[[], Any], name: str = "quiz-submissions", poll_interval: float = 0.1):
        self.name = name
        self.key = lock_key(name)
        self._get_pool = get_pool
        self._poll = poll_interval
        self._owner = threading.local()

    def acquire(self, timeout_ms: int) -> None:
        deadline = time.monotonic() + max(0, timeout_ms) / 1000.0
        pool = self._get_pool()
        while True:
            remaining = deadline - time.monotonic()
            try:
                conn = pool.getconn(timeout=max(0.001, remaining))
            except PoolTimeout as e:
                raise LockTimeout(f"no pooled connection free to lock '{self.name}'") from e
            try:
                row = conn.execute("SELECT pg_try_advisory_lock(%s) AS ok;", (self.key,)).fetchone()
                conn.commit()
            except BaseException:
                pool.putconn(conn)
                raise
            if row and (row["ok"] if isinstance(row, dict) else row[0]):
                self._owner.held = (pool, conn)
                return
            pool.putconn(conn)
            if time.monotonic() >= deadline:
                raise LockTimeout(f"could not acquire '{self.name}' within {timeout_ms} ms")
            time.sleep(min(self._poll, max(0.0, deadline - time.monotonic())))

    def release(self) -> None:
        held = getattr(self._owner, "held", None)
        if held is None:
            return
        self._owner.held = None
        pool, conn = held
        try:
            conn.execute("SELECT pg_advisory_unlock(%s);", (self.key,))
            conn.commit()
        except Exception as e:
            print(f"[lock] advisory unlock failed: {e}", flush=True)
        finally:
            pool.putconn(conn)


__all__ = ["LockTimeout", "ThreadLock", "PgAdvisoryLock", "lock_key"]
