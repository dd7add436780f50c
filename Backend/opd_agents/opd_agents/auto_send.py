# opd_agents/auto_send.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .events import (
    APPOINTMENT_CONFIRMED,
    BILL_CREATED,
    DEFAULT_DELAY_MIN,
    GMB_REVIEW_REQUEST,
    PAYMENT_RECEIVED,
    STATUS_PENDING,
)
from .templates import render_template
from .utils import format_currency, format_message_datetime, now_dt

log = logging.getLogger(__name__)

SKIP_DISABLED = "disabled"
SKIP_NO_PHONE = "no_phone"
SKIP_NO_TEMPLATE = "no_template"
SKIP_BELOW_MIN_AMOUNT = "below_min_amount"


@dataclass(frozen=True)
class SendResult:
    status: str  # "queued" | "skipped"
    message_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def queued(cls, message_id: str) -> "SendResult":
        return cls(status="queued", message_id=message_id)

    @classmethod
    def skipped(cls, reason: str) -> "SendResult":
        return cls(status="skipped", reason=reason)

    @property
    def is_queued(self) -> bool:
        return self.status == "queued"


def _amount_value(v: Any) -> Optional[float]:
    if v is None:
        return None
    if isinstance(v, (int, float)):
        return float(v)
    s = re.sub(r"[^0-9.\-]", "", str(v))
    try:
        return float(s)
    except ValueError:
        return None


class AutoSendService:
    """
    Decides whether a clinic event should produce a WhatsApp message and queues it.

    Missing configuration (rule disabled, no phone, no template) is not an error:
    the senders return SendResult.skipped(reason) and nothing is queued.
    """

    def __init__(self, rules, templates, queue, clock: Callable[[], datetime] = now_dt):
        self.rules = rules
        self.templates = templates
        self.queue = queue
        self.clock = clock

    # ---------------------------
    # Lookups
    # ---------------------------
    def _rule(self, clinic_id: str, event_type: str) -> Optional[Dict[str, Any]]:
        try:
            return self.rules.get_rule(clinic_id, event_type)
        except Exception as e:
            log.warning("auto-send rule lookup failed clinic=%s event=%s err=%s", clinic_id, event_type, e)
            return None

    def is_auto_send_enabled(self, clinic_id: str, event_type: str) -> bool:
        rule = self._rule(clinic_id, event_type)
        return bool(rule and rule.get("enabled"))

    def get_template(self, clinic_id: str, event_type: str) -> Optional[str]:
        try:
            row = self.templates.get_default_template(clinic_id, event_type)
        except Exception as e:
            log.warning("template lookup failed clinic=%s event=%s err=%s", clinic_id, event_type, e)
            return None
        if not row:
            return None
        return row.get("message_content") or None

    # ---------------------------
    # Queueing
    # ---------------------------
    def queue_message(
        self,
        *,
        clinic_id: str,
        patient_id: Optional[str],
        phone_number: str,
        event_type: str,
        message_content: str,
        metadata: Optional[Dict[str, Any]] = None,
        delay_minutes: int = 0,
    ) -> str:
        scheduled_at = self.clock()
        if delay_minutes:
            scheduled_at = scheduled_at + timedelta(minutes=int(delay_minutes))

        return self.queue.insert_message(
            {
                "clinic_id": clinic_id,
                "patient_id": patient_id,
                "phone_number": phone_number,
                "event_type": event_type,
                "message_content": message_content,
                "metadata": metadata or {},
                "status": STATUS_PENDING,
                "scheduled_at": scheduled_at,
                "retry_count": 0,
            }
        )

    def _dispatch(
        self,
        clinic_id: str,
        event_type: str,
        patient: Dict[str, Any],
        variables: Dict[str, Any],
        metadata: Dict[str, Any],
        guard: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None,
    ) -> SendResult:
        rule = self._rule(clinic_id, event_type)
        if not rule or not rule.get("enabled"):
            return self._skip(clinic_id, event_type, SKIP_DISABLED)

        phone = (patient or {}).get("phone")
        if not phone:
            return self._skip(clinic_id, event_type, SKIP_NO_PHONE)

        if guard:
            reason = guard(rule)
            if reason:
                return self._skip(clinic_id, event_type, reason)

        template = self.get_template(clinic_id, event_type)
        if not template:
            return self._skip(clinic_id, event_type, SKIP_NO_TEMPLATE)

        delay = int(rule.get("delay_minutes") or 0) or DEFAULT_DELAY_MIN.get(event_type, 0)

        message_id = self.queue_message(
            clinic_id=clinic_id,
            patient_id=patient.get("id"),
            phone_number=phone,
            event_type=event_type,
            message_content=render_template(template, variables),
            metadata=metadata,
            delay_minutes=delay,
        )
        log.info("queued whatsapp clinic=%s event=%s id=%s delay_min=%s", clinic_id, event_type, message_id, delay)
        return SendResult.queued(message_id)

    @staticmethod
    def _skip(clinic_id: str, event_type: str, reason: str) -> SendResult:
        log.info("skipped whatsapp clinic=%s event=%s reason=%s", clinic_id, event_type, reason)
        return SendResult.skipped(reason)

    # ---------------------------
    # Event senders
    # ---------------------------
    def send_appointment_confirmation(
        self,
        clinic_id: str,
        *,
        patient: Dict[str, Any],
        appointment: Dict[str, Any],
        clinic_name: str,
    ) -> SendResult:
        return self._dispatch(
            clinic_id,
            APPOINTMENT_CONFIRMED,
            patient,
            {
                "patientName": patient.get("name") or "",
                "clinicName": clinic_name,
                "appointmentDate": format_message_datetime(appointment.get("appointment_date")),
                "appointmentType": appointment.get("appointment_type") or "",
                "doctorName": appointment.get("doctor_name") or "Doctor",
            },
            {"appointmentId": appointment.get("id")},
        )

    def send_bill_notification(
        self,
        clinic_id: str,
        *,
        patient: Dict[str, Any],
        bill: Dict[str, Any],
        clinic_name: str,
    ) -> SendResult:
        def _min_amount(rule: Dict[str, Any]) -> Optional[str]:
            min_amount = _amount_value((rule.get("conditions") or {}).get("minBillAmount"))
            total = _amount_value(bill.get("total_amount"))
            if min_amount is not None and total is not None and total < min_amount:
                return SKIP_BELOW_MIN_AMOUNT
            return None

        return self._dispatch(
            clinic_id,
            BILL_CREATED,
            patient,
            {
                "patientName": patient.get("name") or "",
                "clinicName": clinic_name,
                "billNumber": bill.get("bill_number") or "",
                "totalAmount": format_currency(bill.get("total_amount")),
                "paidAmount": format_currency(bill.get("paid_amount")),
                "balanceAmount": format_currency(bill.get("balance_amount")),
                "paymentStatus": bill.get("payment_status") or "",
            },
            {"billId": bill.get("id")},
            guard=_min_amount,
        )

    def send_payment_confirmation(
        self,
        clinic_id: str,
        *,
        patient: Dict[str, Any],
        bill: Dict[str, Any],
        amount_paid: Any,
        clinic_name: str,
    ) -> SendResult:
        return self._dispatch(
            clinic_id,
            PAYMENT_RECEIVED,
            patient,
            {
                "patientName": patient.get("name") or "",
                "clinicName": clinic_name,
                "billNumber": bill.get("bill_number") or "",
                "amountPaid": format_currency(amount_paid),
                "balanceAmount": format_currency(bill.get("balance_amount")),
                "totalAmount": format_currency(bill.get("total_amount")),
            },
            {"billId": bill.get("id"), "amountPaid": amount_paid},
        )

    def send_gmb_review_request(
        self,
        clinic_id: str,
        *,
        patient: Dict[str, Any],
        gmb_link: str,
        clinic_name: str,
    ) -> SendResult:
        return self._dispatch(
            clinic_id,
            GMB_REVIEW_REQUEST,
            patient,
            {
                "patientName": patient.get("name") or "",
                "clinicName": clinic_name,
                "reviewLink": gmb_link,
            },
            {"gmbLink": gmb_link},
        )
