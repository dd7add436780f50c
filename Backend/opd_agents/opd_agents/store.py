# opd_agents/store.py
"""
MySQL-backed repositories for the messaging queue and the pharmacy ledger.

Services never touch a connection directly; they receive these store objects
(see `Stores`) so tests can swap in in-memory fakes with the same methods.
Every write method commits its own transaction and rolls back on error.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .db import safe_rollback
from .events import STATUS_CANCELLED, STATUS_PENDING, STATUS_SENT
from .idempotency import IdempotencyLocks
from .pharmacy import InsufficientStockError, MedicineNotFoundError
from .templates import template_placeholders
from .utils import json_dumps, json_load_list, json_loads


def _new_id() -> str:
    return str(uuid.uuid4())


def _bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes")
    return bool(v)


class _Store:
    def __init__(self, conn):
        self.conn = conn

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return list(cur.fetchall() or [])

    def _write(self, sql: str, params: tuple = ()) -> int:
        safe_rollback(self.conn)
        try:
            with self.conn.cursor() as cur:
                cur.execute(sql, params)
                n = cur.rowcount
            self.conn.commit()
            return n
        except Exception:
            self.conn.rollback()
            raise


# ----------------------------
# WhatsApp auto-send rules
# ----------------------------
def _rule_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    row = dict(row)
    row["enabled"] = _bool(row.get("enabled"))
    row["delay_minutes"] = int(row.get("delay_minutes") or 0)
    row["conditions"] = json_loads(row.get("conditions"))
    return row


class AutoSendRuleStore(_Store):
    def get_rule(self, clinic_id: str, event_type: str) -> Optional[Dict[str, Any]]:
        return _rule_row(
            self._fetchone(
                """
                SELECT clinic_id, event_type, enabled, delay_minutes, conditions
                FROM whatsapp_auto_send_rules
                WHERE clinic_id=%s AND event_type=%s
                LIMIT 1
                """,
                (clinic_id, event_type),
            )
        )

    def list_rules(self, clinic_id: str) -> List[Dict[str, Any]]:
        rows = self._fetchall(
            """
            SELECT clinic_id, event_type, enabled, delay_minutes, conditions
            FROM whatsapp_auto_send_rules
            WHERE clinic_id=%s
            ORDER BY event_type
            """,
            (clinic_id,),
        )
        return [_rule_row(r) for r in rows]

    def upsert_rule(
        self,
        clinic_id: str,
        event_type: str,
        *,
        enabled: bool,
        delay_minutes: int = 0,
        conditions: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        # (clinic_id, event_type) carries a UNIQUE key
        self._write(
            """
            INSERT INTO whatsapp_auto_send_rules
              (id, clinic_id, event_type, enabled, delay_minutes, conditions, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, NOW(), NOW())
            ON DUPLICATE KEY UPDATE
              enabled=VALUES(enabled),
              delay_minutes=VALUES(delay_minutes),
              conditions=VALUES(conditions),
              updated_at=NOW()
            """,
            (
                _new_id(),
                clinic_id,
                event_type,
                1 if enabled else 0,
                int(delay_minutes or 0),
                json_dumps(conditions or {}),
            ),
        )
        return self.get_rule(clinic_id, event_type)


# ----------------------------
# WhatsApp message templates
# ----------------------------
class TemplateStore(_Store):
    def get_default_template(self, clinic_id: str, event_type: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            """
            SELECT id, name, event_type, message_content, is_default
            FROM whatsapp_message_templates
            WHERE clinic_id=%s AND event_type=%s
            ORDER BY is_default DESC, created_at ASC
            LIMIT 1
            """,
            (clinic_id, event_type),
        )

    def list_templates(self, clinic_id: str, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        where = "clinic_id=%s"
        params: List[Any] = [clinic_id]
        if event_type:
            where += " AND event_type=%s"
            params.append(event_type)
        rows = self._fetchall(
            f"""
            SELECT id, name, event_type, message_content, variables, is_default
            FROM whatsapp_message_templates
            WHERE {where}
            ORDER BY event_type, is_default DESC, created_at ASC
            """,
            tuple(params),
        )
        out = []
        for r in rows:
            r = dict(r)
            r["is_default"] = _bool(r.get("is_default"))
            r["variables"] = json_load_list(r.get("variables"))
            out.append(r)
        return out

    def save_template(
        self,
        clinic_id: str,
        event_type: str,
        *,
        name: str,
        message_content: str,
        is_default: bool = False,
    ) -> str:
        template_id = _new_id()
        safe_rollback(self.conn)
        try:
            with self.conn.cursor() as cur:
                if is_default:
                    cur.execute(
                        "UPDATE whatsapp_message_templates SET is_default=0, updated_at=NOW() "
                        "WHERE clinic_id=%s AND event_type=%s",
                        (clinic_id, event_type),
                    )
                cur.execute(
                    """
                    INSERT INTO whatsapp_message_templates
                      (id, clinic_id, name, event_type, message_content, variables, is_default, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, NOW(), NOW())
                    """,
                    (
                        template_id,
                        clinic_id,
                        name[:200],
                        event_type,
                        message_content,
                        json_dumps(template_placeholders(message_content)),
                        1 if is_default else 0,
                    ),
                )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return template_id


# ----------------------------
# WhatsApp message queue
# ----------------------------
_QUEUE_COLS = """
    id, clinic_id, patient_id, phone_number, event_type, message_content, metadata,
    status, scheduled_at, sent_at, retry_count, error, created_at, updated_at
"""


def _queue_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    row = dict(row)
    row["metadata"] = json_loads(row.get("metadata"))
    row["retry_count"] = int(row.get("retry_count") or 0)
    return row


class MessageQueueStore(_Store):
    def insert_message(self, message: Dict[str, Any]) -> str:
        message_id = message.get("id") or _new_id()
        self._write(
            """
            INSERT INTO whatsapp_message_queue
              (id, clinic_id, patient_id, phone_number, event_type, message_content, metadata,
               status, scheduled_at, retry_count, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW(), NOW())
            """,
            (
                message_id,
                message["clinic_id"],
                message.get("patient_id"),
                message["phone_number"],
                message["event_type"],
                message["message_content"],
                json_dumps(message.get("metadata") or {}),
                message.get("status") or STATUS_PENDING,
                message["scheduled_at"],
                int(message.get("retry_count") or 0),
            ),
        )
        return message_id

    def due_messages(self, clinic_id: str, now: datetime, max_retries: int, limit: int) -> List[Dict[str, Any]]:
        rows = self._fetchall(
            f"""
            SELECT {_QUEUE_COLS}
            FROM whatsapp_message_queue
            WHERE clinic_id=%s
              AND status=%s
              AND scheduled_at <= %s
              AND retry_count < %s
            ORDER BY scheduled_at ASC
            LIMIT %s
            """,
            (clinic_id, STATUS_PENDING, now, int(max_retries), int(limit)),
        )
        return [_queue_row(r) for r in rows]

    def clinics_with_due_messages(self, now: datetime, max_retries: int) -> List[str]:
        rows = self._fetchall(
            """
            SELECT DISTINCT clinic_id
            FROM whatsapp_message_queue
            WHERE status=%s AND scheduled_at <= %s AND retry_count < %s
            """,
            (STATUS_PENDING, now, int(max_retries)),
        )
        return [str(r["clinic_id"]) for r in rows]

    def mark_sent(self, message_id: str, sent_at: datetime) -> None:
        self._write(
            """
            UPDATE whatsapp_message_queue
            SET status=%s, sent_at=%s, error=NULL, updated_at=NOW()
            WHERE id=%s
            """,
            (STATUS_SENT, sent_at, message_id),
        )

    def record_failure(
        self,
        message_id: str,
        *,
        error: str,
        retry_count: int,
        status: str,
        next_attempt_at: Optional[datetime] = None,
    ) -> None:
        sets = ["status=%s", "error=%s", "retry_count=%s", "updated_at=NOW()"]
        params: List[Any] = [status, (error or "")[:2000], int(retry_count)]
        if next_attempt_at is not None:
            sets.append("scheduled_at=%s")
            params.append(next_attempt_at)
        params.append(message_id)
        self._write(f"UPDATE whatsapp_message_queue SET {', '.join(sets)} WHERE id=%s", tuple(params))

    def cancel_message(self, clinic_id: str, message_id: str) -> bool:
        n = self._write(
            """
            UPDATE whatsapp_message_queue
            SET status=%s, updated_at=NOW()
            WHERE id=%s AND clinic_id=%s AND status=%s
            """,
            (STATUS_CANCELLED, message_id, clinic_id, STATUS_PENDING),
        )
        return n > 0

    def list_messages(self, clinic_id: str, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        where = "clinic_id=%s"
        params: List[Any] = [clinic_id]
        if status:
            where += " AND status=%s"
            params.append(status)
        params.append(int(limit))
        rows = self._fetchall(
            f"""
            SELECT {_QUEUE_COLS}
            FROM whatsapp_message_queue
            WHERE {where}
            ORDER BY scheduled_at DESC
            LIMIT %s
            """,
            tuple(params),
        )
        return [_queue_row(r) for r in rows]


class MessageLogStore(_Store):
    def record(self, entry: Dict[str, Any]) -> str:
        log_id = _new_id()
        self._write(
            """
            INSERT INTO whatsapp_message_log
              (id, clinic_id, patient_id, phone_number, event_type, message_content,
               status, sent_at, message_id, error, metadata)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                log_id,
                entry["clinic_id"],
                entry.get("patient_id"),
                entry["phone_number"],
                entry["event_type"],
                entry["message_content"],
                entry["status"],
                entry["sent_at"],
                entry.get("message_id"),
                (entry.get("error") or None) and str(entry["error"])[:2000],
                json_dumps(entry.get("metadata") or {}),
            ),
        )
        return log_id


# ----------------------------
# Pharmacy: medicines + stock movement ledger
# ----------------------------
_MEDICINE_COLS = "id, clinic_id, name, current_stock, reorder_level, batch_number, expiry_date, is_active"


class MedicineStore(_Store):
    def get_medicine(self, clinic_id: str, medicine_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            f"SELECT {_MEDICINE_COLS} FROM medicines_master WHERE id=%s AND clinic_id=%s LIMIT 1",
            (medicine_id, clinic_id),
        )

    def apply_movements(self, clinic_id: str, movements: List[Dict[str, Any]]) -> List[int]:
        """
        Apply signed stock changes and append ledger rows in one transaction.
        The conditional UPDATE refuses any change that would leave stock negative,
        whatever the caller read beforehand.
        """
        levels: List[int] = []
        safe_rollback(self.conn)
        try:
            with self.conn.cursor() as cur:
                for m in movements:
                    medicine_id = m["medicine_id"]
                    delta = int(m["quantity_change"])
                    cur.execute(
                        """
                        UPDATE medicines_master
                        SET current_stock = current_stock + %s, updated_at=NOW()
                        WHERE id=%s AND clinic_id=%s AND current_stock + %s >= 0
                        """,
                        (delta, medicine_id, clinic_id, delta),
                    )
                    if cur.rowcount == 0:
                        cur.execute(
                            "SELECT current_stock FROM medicines_master WHERE id=%s AND clinic_id=%s LIMIT 1",
                            (medicine_id, clinic_id),
                        )
                        row = cur.fetchone()
                        if not row:
                            raise MedicineNotFoundError(medicine_id)
                        raise InsufficientStockError(medicine_id, int(row["current_stock"] or 0), delta)

                    cur.execute(
                        "SELECT current_stock FROM medicines_master WHERE id=%s AND clinic_id=%s LIMIT 1",
                        (medicine_id, clinic_id),
                    )
                    new_level = int(cur.fetchone()["current_stock"])

                    cur.execute(
                        """
                        INSERT INTO stock_movement_log
                          (id, clinic_id, medicine_id, movement_type, quantity_change, new_stock_level,
                           reference_type, reference_id, moved_by, movement_date, remarks, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, NOW(), %s, NOW())
                        """,
                        (
                            _new_id(),
                            clinic_id,
                            medicine_id,
                            m["movement_type"],
                            delta,
                            new_level,
                            m.get("reference_type"),
                            m.get("reference_id"),
                            m.get("moved_by"),
                            m.get("remarks"),
                        ),
                    )
                    levels.append(new_level)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return levels

    def movement_log(self, clinic_id: str, medicine_id: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
        where = "l.clinic_id=%s"
        params: List[Any] = [clinic_id]
        if medicine_id:
            where += " AND l.medicine_id=%s"
            params.append(medicine_id)
        params.append(int(limit))
        return self._fetchall(
            f"""
            SELECT l.id, l.medicine_id, m.name AS medicine_name, l.movement_type, l.quantity_change,
                   l.new_stock_level, l.reference_type, l.reference_id, l.moved_by, l.movement_date, l.remarks
            FROM stock_movement_log l
            LEFT JOIN medicines_master m ON m.id = l.medicine_id
            WHERE {where}
            ORDER BY l.movement_date DESC
            LIMIT %s
            """,
            tuple(params),
        )

    def low_stock(self, clinic_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            f"""
            SELECT {_MEDICINE_COLS}
            FROM medicines_master
            WHERE clinic_id=%s AND is_active=1
              AND reorder_level > 0
              AND current_stock <= reorder_level
            ORDER BY current_stock ASC
            """,
            (clinic_id,),
        )

    def expiring(self, clinic_id: str, until: date) -> List[Dict[str, Any]]:
        return self._fetchall(
            f"""
            SELECT {_MEDICINE_COLS}
            FROM medicines_master
            WHERE clinic_id=%s AND is_active=1
              AND expiry_date IS NOT NULL
              AND expiry_date <= %s
              AND current_stock > 0
            ORDER BY expiry_date ASC
            """,
            (clinic_id, until),
        )

    def clinic_ids(self) -> List[str]:
        rows = self._fetchall("SELECT DISTINCT clinic_id FROM medicines_master WHERE is_active=1")
        return [str(r["clinic_id"]) for r in rows]


class StockAlertStore(_Store):
    def open_alert(self, clinic_id: str, medicine_id: str, alert_type: str, message: str) -> Optional[str]:
        """Insert an alert unless an unresolved one of the same type exists. Returns the new id or None."""
        existing = self._fetchone(
            """
            SELECT id FROM stock_alerts
            WHERE clinic_id=%s AND medicine_id=%s AND alert_type=%s AND is_resolved=0
            LIMIT 1
            """,
            (clinic_id, medicine_id, alert_type),
        )
        if existing:
            return None
        alert_id = _new_id()
        self._write(
            """
            INSERT INTO stock_alerts (id, clinic_id, medicine_id, alert_type, message, is_resolved, created_at)
            VALUES (%s, %s, %s, %s, %s, 0, NOW())
            """,
            (alert_id, clinic_id, medicine_id, alert_type, message[:500]),
        )
        return alert_id

    def list_alerts(self, clinic_id: str, include_resolved: bool = False) -> List[Dict[str, Any]]:
        where = "a.clinic_id=%s"
        if not include_resolved:
            where += " AND a.is_resolved=0"
        rows = self._fetchall(
            f"""
            SELECT a.id, a.medicine_id, m.name AS medicine_name, a.alert_type, a.message,
                   a.is_resolved, a.resolved_at, a.resolved_by, a.created_at
            FROM stock_alerts a
            LEFT JOIN medicines_master m ON m.id = a.medicine_id
            WHERE {where}
            ORDER BY a.created_at DESC
            """,
            (clinic_id,),
        )
        out = []
        for r in rows:
            r = dict(r)
            r["is_resolved"] = _bool(r.get("is_resolved"))
            out.append(r)
        return out

    def resolve_alert(self, clinic_id: str, alert_id: str, resolved_by: Optional[str]) -> bool:
        n = self._write(
            """
            UPDATE stock_alerts
            SET is_resolved=1, resolved_at=NOW(), resolved_by=%s
            WHERE id=%s AND clinic_id=%s AND is_resolved=0
            """,
            (resolved_by, alert_id, clinic_id),
        )
        return n > 0


@dataclass
class Stores:
    rules: Any
    templates: Any
    queue: Any
    log: Any
    medicines: Any
    alerts: Any
    locks: Any
    conn: Any = None

    @classmethod
    def for_conn(cls, conn) -> "Stores":
        return cls(
            rules=AutoSendRuleStore(conn),
            templates=TemplateStore(conn),
            queue=MessageQueueStore(conn),
            log=MessageLogStore(conn),
            medicines=MedicineStore(conn),
            alerts=StockAlertStore(conn),
            locks=IdempotencyLocks(conn),
            conn=conn,
        )
