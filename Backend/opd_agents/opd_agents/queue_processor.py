# opd_agents/queue_processor.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .config import (
    DEFAULT_COUNTRY_CODE,
    QUEUE_BATCH_SIZE,
    QUEUE_LOCK_TTL_SECONDS,
    QUEUE_MAX_RETRIES,
    QUEUE_RETRY_DELAY_SEC,
    WHATSAPP_TIMEOUT_SEC,
)
from .events import STATUS_FAILED, STATUS_PENDING, STATUS_SENT
from .phone import normalize_phone
from .utils import now_dt

log = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    attempted: int = 0
    sent: int = 0
    retrying: int = 0
    failed: int = 0
    errors: int = 0


class QueueProcessor:
    """
    One processing pass over a clinic's due WhatsApp messages.

    pending --ok--> sent
    pending --error, retry_count+1 <  max_retries--> pending (rescheduled)
    pending --error, retry_count+1 >= max_retries--> failed
    """

    def __init__(
        self,
        queue,
        message_log,
        gateway,
        *,
        batch_size: int = QUEUE_BATCH_SIZE,
        max_retries: int = QUEUE_MAX_RETRIES,
        retry_delay_sec: int = QUEUE_RETRY_DELAY_SEC,
        country_code: str = DEFAULT_COUNTRY_CODE,
        send_timeout: int = WHATSAPP_TIMEOUT_SEC,
        clock: Callable[[], datetime] = now_dt,
    ):
        self.queue = queue
        self.message_log = message_log
        self.gateway = gateway
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay_sec = retry_delay_sec
        self.country_code = country_code
        self.send_timeout = send_timeout
        self.clock = clock

    def lock_ttl(self, floor: int = QUEUE_LOCK_TTL_SECONDS) -> int:
        """Seconds a clinic lock must outlive a full pass where every send hits the gateway timeout."""
        worst_case = self.batch_size * (self.send_timeout + 5) + 60
        return max(int(floor), worst_case)

    def process_pending(self, clinic_id: str, user_id: Optional[str] = None) -> ProcessResult:
        result = ProcessResult()
        messages = self.queue.due_messages(clinic_id, self.clock(), self.max_retries, self.batch_size)

        # sequential, oldest scheduled first; one failure never aborts the pass
        for message in messages:
            result.attempted += 1
            try:
                outcome = self.attempt(message, user_id=user_id)
            except Exception:
                # bookkeeping failed (store unreachable); leave the row as it was
                log.exception("whatsapp queue bookkeeping failed id=%s", message.get("id"))
                result.errors += 1
                continue
            if outcome == STATUS_SENT:
                result.sent += 1
            elif outcome == STATUS_PENDING:
                result.retrying += 1
            else:
                result.failed += 1

        if result.attempted:
            log.info(
                "whatsapp queue pass clinic=%s attempted=%s sent=%s retrying=%s failed=%s errors=%s",
                clinic_id, result.attempted, result.sent, result.retrying, result.failed, result.errors,
            )
        return result

    def attempt(self, message: Dict[str, Any], user_id: Optional[str] = None) -> str:
        """
        Try to deliver one queued message. Returns the row's new status.

        Delivery is at-least-once: if the gateway accepted the message but
        `mark_sent` raises, the exception propagates, the row stays pending
        and the next pass sends it again.
        """
        message_id = message["id"]
        metadata = dict(message.get("metadata") or {})
        metadata["eventType"] = message.get("event_type")

        try:
            self.gateway.send_message(
                phone=normalize_phone(message.get("phone_number"), self.country_code),
                message=message.get("message_content") or "",
                metadata=metadata,
                user_id=user_id,
                clinic_id=message.get("clinic_id"),
            )
        except Exception as e:
            return self._on_failure(message, e)

        sent_at = self.clock()
        self.queue.mark_sent(message_id, sent_at)
        self._write_log(message, status=STATUS_SENT, sent_at=sent_at)
        return STATUS_SENT

    def _on_failure(self, message: Dict[str, Any], exc: Exception) -> str:
        message_id = message["id"]
        err = f"{type(exc).__name__}: {exc}"
        retry_count = int(message.get("retry_count") or 0) + 1
        now = self.clock()

        if retry_count >= self.max_retries:
            status = STATUS_FAILED
            next_attempt_at = None
            log.error("whatsapp message %s failed permanently after %s attempts: %s", message_id, retry_count, err)
        else:
            status = STATUS_PENDING
            next_attempt_at = now + timedelta(seconds=self.retry_delay_sec * retry_count)
            log.warning("whatsapp message %s attempt %s failed, will retry: %s", message_id, retry_count, err)

        self.queue.record_failure(
            message_id,
            error=err,
            retry_count=retry_count,
            status=status,
            next_attempt_at=next_attempt_at,
        )
        self._write_log(message, status=STATUS_FAILED, sent_at=now, error=err)
        return status

    def _write_log(self, message: Dict[str, Any], *, status: str, sent_at: datetime, error: Optional[str] = None) -> None:
        try:
            self.message_log.record(
                {
                    "clinic_id": message.get("clinic_id"),
                    "patient_id": message.get("patient_id"),
                    "phone_number": message.get("phone_number"),
                    "event_type": message.get("event_type"),
                    "message_content": message.get("message_content"),
                    "status": status,
                    "sent_at": sent_at,
                    "error": error,
                    "metadata": message.get("metadata") or {},
                }
            )
        except Exception:
            # the queue row already reflects the outcome; a missing log row must not resend
            log.exception("whatsapp message log write failed id=%s", message.get("id"))
