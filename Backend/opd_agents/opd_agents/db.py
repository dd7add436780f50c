# opd_agents/db.py
from __future__ import annotations

from dataclasses import dataclass

import mysql.connector

from . import config as _config


@dataclass(frozen=True)
class DbConfig:
    host: str
    port: int
    user: str
    password: str
    database: str
    connect_timeout: int = 10
    time_zone: str = "+05:30"


def get_db_config() -> DbConfig:
    return DbConfig(
        host=_config.DB_HOST,
        port=_config.DB_PORT,
        user=_config.DB_USER,
        password=_config.DB_PASSWORD,
        database=_config.DB_NAME,
        connect_timeout=_config.DB_CONNECT_TIMEOUT,
        time_zone=_config.DB_TIME_ZONE,
    )


class _ConnWrapper:
    """
    mysql-connector connection whose cursors default to dictionary=True, buffered=True,
    so every store can write `with conn.cursor() as cur` and read rows by column name.
    """

    def __init__(self, conn):
        self._conn = conn

    def __getattr__(self, item):
        return getattr(self._conn, item)

    def cursor(self, *args, **kwargs):
        kwargs.setdefault("dictionary", True)
        # buffered: no "Unread result" after SELECT ... LIMIT 1 on the same connection
        kwargs.setdefault("buffered", True)
        return self._conn.cursor(*args, **kwargs)


def get_conn(cfg: DbConfig | None = None) -> _ConnWrapper:
    """Open a connection with autocommit off. Every store write commits explicitly."""
    cfg = cfg or get_db_config()
    conn = _ConnWrapper(
        mysql.connector.connect(
            host=cfg.host,
            port=cfg.port,
            user=cfg.user,
            password=cfg.password,
            database=cfg.database,
            connection_timeout=cfg.connect_timeout,
            autocommit=False,
        )
    )
    if cfg.time_zone:
        with conn.cursor() as cur:
            # idempotency_locks.expires_at and scheduled_at comparisons rely on NOW()
            cur.execute("SET time_zone = %s", (cfg.time_zone,))
    return conn


def safe_rollback(conn) -> None:
    try:
        if getattr(conn, "in_transaction", False):
            conn.rollback()
    except mysql.connector.Error:
        pass


def safe_close(conn) -> None:
    try:
        conn.close()
    except mysql.connector.Error:
        pass
