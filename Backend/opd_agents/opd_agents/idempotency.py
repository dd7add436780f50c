# opd_agents/idempotency.py
import mysql.connector

from .config import WORKER_ID
from .db import safe_rollback


class IdempotencyLocks:
    """
    Simple DB-based TTL locks (idempotency_locks.lock_key is the primary key).
    claim() returns True if acquired, False if someone else holds it and it has not expired.
    """

    def __init__(self, conn):
        self.conn = conn

    def claim(self, lock_key: str, ttl_seconds: int, locked_by: str = WORKER_ID) -> bool:
        lock_key = (lock_key or "").strip()
        if not lock_key:
            return False

        safe_rollback(self.conn)
        with self.conn.cursor() as cur:
            # remove expired lock if any
            cur.execute(
                "DELETE FROM idempotency_locks WHERE lock_key=%s AND expires_at <= NOW()",
                (lock_key[:190],),
            )
            try:
                cur.execute(
                    "INSERT INTO idempotency_locks (lock_key, locked_by, expires_at, created_at) "
                    "VALUES (%s, %s, DATE_ADD(NOW(), INTERVAL %s SECOND), NOW())",
                    (lock_key[:190], locked_by, int(ttl_seconds)),
                )
            except mysql.connector.IntegrityError:
                self.conn.rollback()
                return False
        self.conn.commit()
        return True

    def release(self, lock_key: str, locked_by: str = WORKER_ID) -> None:
        safe_rollback(self.conn)
        with self.conn.cursor() as cur:
            cur.execute(
                "DELETE FROM idempotency_locks WHERE lock_key=%s AND locked_by=%s",
                (lock_key[:190], locked_by),
            )
        self.conn.commit()
