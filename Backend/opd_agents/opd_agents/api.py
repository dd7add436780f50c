# opd_agents/api.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import config as _config
from .auto_send import AutoSendService, SendResult
from .db import get_conn, safe_close
from .events import (
    ALL_EVENT_TYPES,
    APPOINTMENT_CONFIRMED,
    BILL_CREATED,
    GMB_REVIEW_REQUEST,
    PAYMENT_RECEIVED,
)
from .gateway import WhatsAppGateway
from .pharmacy import (
    InsufficientStockError,
    MedicineNotFoundError,
    adjust_stock,
    dispense,
    expiring_medicines,
    low_stock_medicines,
    receive_inward,
    return_to_supplier,
)
from .queue_processor import QueueProcessor
from .store import Stores

log = logging.getLogger(__name__)


# ----------------------------
# API contracts
# ----------------------------
class RuleIn(BaseModel):
    enabled: bool
    delayMinutes: int = Field(default=0, ge=0)
    conditions: Optional[Dict[str, Any]] = None


class TemplateIn(BaseModel):
    eventType: str
    name: str
    messageContent: str
    isDefault: bool = False


class StockAdjustmentIn(BaseModel):
    medicineId: str
    adjustmentType: str = "increase"  # increase | decrease
    quantity: int
    reason: str


class StockLineIn(BaseModel):
    medicineId: str
    quantity: int
    remarks: Optional[str] = None


class InwardIn(BaseModel):
    items: List[StockLineIn]
    receiptId: Optional[str] = None
    supplierName: Optional[str] = None


class DispenseIn(BaseModel):
    items: List[StockLineIn]
    visitId: Optional[str] = None


class SupplierReturnIn(BaseModel):
    medicineId: str
    quantity: int
    reason: str
    supplierId: Optional[str] = None


class PatientIn(BaseModel):
    id: Optional[str] = None
    name: str = ""
    phone: Optional[str] = None


class ClinicEventIn(BaseModel):
    clinicName: str
    patient: PatientIn
    appointment: Optional[Dict[str, Any]] = None
    bill: Optional[Dict[str, Any]] = None
    amountPaid: Optional[float] = None
    gmbLink: Optional[str] = None


class SendResultOut(BaseModel):
    status: str
    messageId: Optional[str] = None
    reason: Optional[str] = None


class ResolveAlertIn(BaseModel):
    resolvedBy: Optional[str] = None


class ProcessResultOut(BaseModel):
    attempted: int
    sent: int
    retrying: int
    failed: int
    errors: int
    skipped: bool = False


# ----------------------------
# Dependencies
# ----------------------------
def get_stores():
    conn = get_conn()
    try:
        yield Stores.for_conn(conn)
    finally:
        safe_close(conn)


def get_gateway() -> WhatsAppGateway:
    return WhatsAppGateway()


def verify_jwt_or_401(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    if not _config.JWT_SECRET:
        return {}  # dev permissive
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        return jwt.decode(token, _config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def _user_id(claims: Dict[str, Any]) -> Optional[str]:
    v = claims.get("userId") or claims.get("sub")
    return str(v) if v else None


def _check_event_type(event_type: str) -> str:
    if event_type not in ALL_EVENT_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown event type: {event_type}")
    return event_type


@contextmanager
def _stock_errors():
    try:
        yield
    except MedicineNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InsufficientStockError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


def _stock_lines(items: List[StockLineIn]) -> List[Dict[str, Any]]:
    return [{"medicine_id": it.medicineId, "quantity": it.quantity, "remarks": it.remarks} for it in items]


# ----------------------------
# FastAPI
# ----------------------------
app = FastAPI(title="OPD Agents API", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    try:
        conn = get_conn()
        safe_close(conn)
        db_ok = True
    except Exception as e:
        log.warning("health: db unreachable: %s", e)
        db_ok = False
    return {"ok": True, "db": _config.DB_NAME, "db_ok": db_ok}


# --- whatsapp auto-send rules ---
@app.get("/clinics/{clinic_id}/whatsapp/rules")
def list_rules(clinic_id: str, stores: Stores = Depends(get_stores), _claims=Depends(verify_jwt_or_401)):
    return {"rules": stores.rules.list_rules(clinic_id)}


@app.put("/clinics/{clinic_id}/whatsapp/rules/{event_type}")
def upsert_rule(
    clinic_id: str,
    event_type: str,
    body: RuleIn,
    stores: Stores = Depends(get_stores),
    _claims=Depends(verify_jwt_or_401),
):
    _check_event_type(event_type)
    rule = stores.rules.upsert_rule(
        clinic_id,
        event_type,
        enabled=body.enabled,
        delay_minutes=body.delayMinutes,
        conditions=body.conditions,
    )
    return {"rule": rule}


# --- whatsapp templates ---
@app.get("/clinics/{clinic_id}/whatsapp/templates")
def list_templates(
    clinic_id: str,
    eventType: Optional[str] = None,
    stores: Stores = Depends(get_stores),
    _claims=Depends(verify_jwt_or_401),
):
    return {"templates": stores.templates.list_templates(clinic_id, eventType)}


@app.post("/clinics/{clinic_id}/whatsapp/templates", status_code=201)
def create_template(
    clinic_id: str,
    body: TemplateIn,
    stores: Stores = Depends(get_stores),
    _claims=Depends(verify_jwt_or_401),
):
    _check_event_type(body.eventType)
    if not body.messageContent.strip():
        raise HTTPException(status_code=422, detail="messageContent is required")
    template_id = stores.templates.save_template(
        clinic_id,
        body.eventType,
        name=body.name,
        message_content=body.messageContent,
        is_default=body.isDefault,
    )
    return {"id": template_id}


# --- whatsapp queue ---
@app.get("/clinics/{clinic_id}/whatsapp/queue")
def list_queue(
    clinic_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    stores: Stores = Depends(get_stores),
    _claims=Depends(verify_jwt_or_401),
):
    return {"messages": stores.queue.list_messages(clinic_id, status=status, limit=min(max(limit, 1), 200))}


@app.post("/clinics/{clinic_id}/whatsapp/queue/process", response_model=ProcessResultOut)
def process_queue(
    clinic_id: str,
    stores: Stores = Depends(get_stores),
    gateway: WhatsAppGateway = Depends(get_gateway),
    claims: Dict[str, Any] = Depends(verify_jwt_or_401),
):
    lock_key = f"whatsapp_queue:{clinic_id}"
    owner = f"api:{_user_id(claims) or 'anonymous'}"
    processor = QueueProcessor(stores.queue, stores.log, gateway)
    if not stores.locks.claim(lock_key, processor.lock_ttl(), owner):
        return ProcessResultOut(attempted=0, sent=0, retrying=0, failed=0, errors=0, skipped=True)
    try:
        r = processor.process_pending(clinic_id, user_id=_user_id(claims))
    finally:
        stores.locks.release(lock_key, owner)
    return ProcessResultOut(attempted=r.attempted, sent=r.sent, retrying=r.retrying, failed=r.failed, errors=r.errors)


@app.post("/clinics/{clinic_id}/whatsapp/queue/{message_id}/cancel")
def cancel_message(
    clinic_id: str,
    message_id: str,
    stores: Stores = Depends(get_stores),
    _claims=Depends(verify_jwt_or_401),
):
    if not stores.queue.cancel_message(clinic_id, message_id):
        raise HTTPException(status_code=404, detail="No pending message with that id")
    return {"ok": True}


# --- clinic events -> auto-send ---
@app.post("/clinics/{clinic_id}/whatsapp/events/{event_type}", response_model=SendResultOut)
def clinic_event(
    clinic_id: str,
    event_type: str,
    body: ClinicEventIn,
    stores: Stores = Depends(get_stores),
    _claims=Depends(verify_jwt_or_401),
):
    _check_event_type(event_type)
    service = AutoSendService(stores.rules, stores.templates, stores.queue)
    patient = body.patient.model_dump()

    if event_type == APPOINTMENT_CONFIRMED:
        result = service.send_appointment_confirmation(
            clinic_id, patient=patient, appointment=body.appointment or {}, clinic_name=body.clinicName
        )
    elif event_type == BILL_CREATED:
        result = service.send_bill_notification(
            clinic_id, patient=patient, bill=body.bill or {}, clinic_name=body.clinicName
        )
    elif event_type == PAYMENT_RECEIVED:
        if body.amountPaid is None:
            raise HTTPException(status_code=422, detail="amountPaid is required")
        result = service.send_payment_confirmation(
            clinic_id, patient=patient, bill=body.bill or {}, amount_paid=body.amountPaid, clinic_name=body.clinicName
        )
    elif event_type == GMB_REVIEW_REQUEST:
        if not body.gmbLink:
            raise HTTPException(status_code=422, detail="gmbLink is required")
        result = service.send_gmb_review_request(
            clinic_id, patient=patient, gmb_link=body.gmbLink, clinic_name=body.clinicName
        )
    else:
        raise HTTPException(status_code=400, detail=f"No auto-send handler for event type: {event_type}")

    return _send_result_out(result)


def _send_result_out(result: SendResult) -> SendResultOut:
    return SendResultOut(status=result.status, messageId=result.message_id, reason=result.reason)


# --- pharmacy ---
@app.post("/clinics/{clinic_id}/pharmacy/adjustments")
def create_adjustment(
    clinic_id: str,
    body: StockAdjustmentIn,
    stores: Stores = Depends(get_stores),
    claims: Dict[str, Any] = Depends(verify_jwt_or_401),
):
    with _stock_errors():
        new_level = adjust_stock(
            stores.medicines,
            clinic_id,
            body.medicineId,
            quantity=body.quantity,
            direction=body.adjustmentType,
            reason=body.reason,
            adjusted_by=_user_id(claims),
        )
    return {"medicineId": body.medicineId, "newStockLevel": new_level}


@app.post("/clinics/{clinic_id}/pharmacy/inward")
def create_inward(
    clinic_id: str,
    body: InwardIn,
    stores: Stores = Depends(get_stores),
    claims: Dict[str, Any] = Depends(verify_jwt_or_401),
):
    with _stock_errors():
        levels = receive_inward(
            stores.medicines,
            clinic_id,
            _stock_lines(body.items),
            receipt_id=body.receiptId,
            supplier_name=body.supplierName,
            received_by=_user_id(claims),
        )
    return {"newStockLevels": levels}


@app.post("/clinics/{clinic_id}/pharmacy/dispense")
def create_dispense(
    clinic_id: str,
    body: DispenseIn,
    stores: Stores = Depends(get_stores),
    claims: Dict[str, Any] = Depends(verify_jwt_or_401),
):
    with _stock_errors():
        levels = dispense(
            stores.medicines,
            clinic_id,
            _stock_lines(body.items),
            visit_id=body.visitId,
            dispensed_by=_user_id(claims),
        )
    return {"newStockLevels": levels}


@app.post("/clinics/{clinic_id}/pharmacy/returns")
def create_supplier_return(
    clinic_id: str,
    body: SupplierReturnIn,
    stores: Stores = Depends(get_stores),
    claims: Dict[str, Any] = Depends(verify_jwt_or_401),
):
    with _stock_errors():
        new_level = return_to_supplier(
            stores.medicines,
            clinic_id,
            body.medicineId,
            quantity=body.quantity,
            reason=body.reason,
            supplier_id=body.supplierId,
            returned_by=_user_id(claims),
        )
    return {"medicineId": body.medicineId, "newStockLevel": new_level}


@app.get("/clinics/{clinic_id}/pharmacy/low-stock")
def low_stock(clinic_id: str, stores: Stores = Depends(get_stores), _claims=Depends(verify_jwt_or_401)):
    return {"medicines": low_stock_medicines(stores.medicines, clinic_id)}


@app.get("/clinics/{clinic_id}/pharmacy/expiring")
def expiring(
    clinic_id: str,
    daysAhead: int = _config.EXPIRY_HORIZON_DAYS,
    stores: Stores = Depends(get_stores),
    _claims=Depends(verify_jwt_or_401),
):
    return {"medicines": expiring_medicines(stores.medicines, clinic_id, daysAhead)}


@app.get("/clinics/{clinic_id}/pharmacy/movements")
def movements(
    clinic_id: str,
    medicineId: Optional[str] = None,
    stores: Stores = Depends(get_stores),
    _claims=Depends(verify_jwt_or_401),
):
    return {"movements": stores.medicines.movement_log(clinic_id, medicineId)}


@app.get("/clinics/{clinic_id}/pharmacy/alerts")
def stock_alerts(
    clinic_id: str,
    includeResolved: bool = False,
    stores: Stores = Depends(get_stores),
    _claims=Depends(verify_jwt_or_401),
):
    return {"alerts": stores.alerts.list_alerts(clinic_id, include_resolved=includeResolved)}


@app.post("/clinics/{clinic_id}/pharmacy/alerts/{alert_id}/resolve")
def resolve_alert(
    clinic_id: str,
    alert_id: str,
    body: Optional[ResolveAlertIn] = None,
    stores: Stores = Depends(get_stores),
    claims: Dict[str, Any] = Depends(verify_jwt_or_401),
):
    resolved_by = (body.resolvedBy if body else None) or _user_id(claims)
    if not stores.alerts.resolve_alert(clinic_id, alert_id, resolved_by):
        raise HTTPException(status_code=404, detail="No open alert with that id")
    return {"ok": True}


def run() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("opd_agents.api:app", host=_config.API_HOST, port=_config.API_PORT)


if __name__ == "__main__":
    run()
