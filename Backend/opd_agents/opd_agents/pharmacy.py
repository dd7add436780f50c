# opd_agents/pharmacy.py
"""
Pharmacy stock ledger.

Every stock change goes through `apply_movements` on the medicine store, which
updates `medicines_master.current_stock` with a conditional UPDATE and appends a
`stock_movement_log` row in the same transaction. The checks done here against
the current level are a pre-flight for clear error messages; the store is what
guarantees stock never goes negative.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from .config import EXPIRY_HORIZON_DAYS
from .events import (
    ALERT_EXPIRED,
    ALERT_EXPIRING,
    ALERT_LOW_STOCK,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_INWARD,
    MOVEMENT_OUTWARD,
    MOVEMENT_RETURN,
)

log = logging.getLogger(__name__)


class MedicineNotFoundError(LookupError):
    def __init__(self, medicine_id: str):
        super().__init__(f"Medicine not found: {medicine_id}")
        self.medicine_id = medicine_id


class InsufficientStockError(ValueError):
    def __init__(self, medicine_id: str, current_stock: int, quantity_change: int):
        super().__init__(
            f"Invalid adjustment. Would result in negative stock. "
            f"Current: {current_stock}, Change: {quantity_change}"
        )
        self.medicine_id = medicine_id
        self.current_stock = current_stock
        self.quantity_change = quantity_change


def compute_new_level(current_stock: int, delta: int) -> int:
    return int(current_stock or 0) + int(delta)


def is_valid_level(level: int) -> bool:
    return level >= 0


def _positive_qty(quantity: Any) -> int:
    try:
        q = int(quantity)
    except (TypeError, ValueError):
        raise ValueError("Please enter a valid quantity")
    if q <= 0:
        raise ValueError("Please enter a valid quantity")
    return q


def _preflight(medicines, clinic_id: str, deltas: Dict[str, int]) -> None:
    for medicine_id, delta in deltas.items():
        med = medicines.get_medicine(clinic_id, medicine_id)
        if not med:
            raise MedicineNotFoundError(medicine_id)
        current = int(med.get("current_stock") or 0)
        if not is_valid_level(compute_new_level(current, delta)):
            raise InsufficientStockError(medicine_id, current, delta)


def adjust_stock(
    medicines,
    clinic_id: str,
    medicine_id: str,
    *,
    quantity: int,
    direction: str,
    reason: str,
    adjusted_by: Optional[str] = None,
) -> int:
    """Manual stock correction. Returns the new stock level."""
    qty = _positive_qty(quantity)
    if direction not in ("increase", "decrease"):
        raise ValueError("direction must be 'increase' or 'decrease'")
    if not (reason or "").strip():
        raise ValueError("Please provide a reason for the adjustment")

    delta = qty if direction == "increase" else -qty
    _preflight(medicines, clinic_id, {medicine_id: delta})

    (new_level,) = medicines.apply_movements(
        clinic_id,
        [
            {
                "medicine_id": medicine_id,
                "movement_type": MOVEMENT_ADJUSTMENT,
                "quantity_change": delta,
                "reference_type": "manual_adjustment",
                "moved_by": adjusted_by,
                "remarks": f"Stock adjustment: {reason.strip()}",
            }
        ],
    )
    log.info("stock adjusted clinic=%s medicine=%s delta=%s new_level=%s", clinic_id, medicine_id, delta, new_level)
    return new_level


def receive_inward(
    medicines,
    clinic_id: str,
    items: List[Dict[str, Any]],
    *,
    receipt_id: Optional[str] = None,
    supplier_name: Optional[str] = None,
    received_by: Optional[str] = None,
) -> List[int]:
    """Book an inward receipt: one positive movement per line."""
    if not items:
        raise ValueError("Inward receipt has no items")
    remark = f"Inward receipt from {supplier_name}" if supplier_name else "Inward receipt"
    movements = [
        {
            "medicine_id": it["medicine_id"],
            "movement_type": MOVEMENT_INWARD,
            "quantity_change": _positive_qty(it.get("quantity")),
            "reference_type": "inward_receipt",
            "reference_id": receipt_id,
            "moved_by": received_by,
            "remarks": remark,
        }
        for it in items
    ]
    return medicines.apply_movements(clinic_id, movements)


def dispense(
    medicines,
    clinic_id: str,
    items: List[Dict[str, Any]],
    *,
    visit_id: Optional[str] = None,
    dispensed_by: Optional[str] = None,
) -> List[int]:
    """Dispense against a visit. All lines are applied, or none."""
    if not items:
        raise ValueError("Nothing to dispense")

    # the same medicine may appear on several prescription lines
    totals: "OrderedDict[str, int]" = OrderedDict()
    for it in items:
        totals[it["medicine_id"]] = totals.get(it["medicine_id"], 0) - _positive_qty(it.get("quantity"))
    _preflight(medicines, clinic_id, totals)

    movements = [
        {
            "medicine_id": it["medicine_id"],
            "movement_type": MOVEMENT_OUTWARD,
            "quantity_change": -_positive_qty(it.get("quantity")),
            "reference_type": "dispensed_item",
            "reference_id": visit_id,
            "moved_by": dispensed_by,
            "remarks": it.get("remarks") or "Dispensed",
        }
        for it in items
    ]
    return medicines.apply_movements(clinic_id, movements)


def return_to_supplier(
    medicines,
    clinic_id: str,
    medicine_id: str,
    *,
    quantity: int,
    reason: str,
    supplier_id: Optional[str] = None,
    returned_by: Optional[str] = None,
) -> int:
    qty = _positive_qty(quantity)
    _preflight(medicines, clinic_id, {medicine_id: -qty})

    remark = f"Return to supplier: {reason}"
    if supplier_id:
        remark += f" (Supplier ID: {supplier_id})"

    (new_level,) = medicines.apply_movements(
        clinic_id,
        [
            {
                "medicine_id": medicine_id,
                "movement_type": MOVEMENT_RETURN,
                "quantity_change": -qty,
                "reference_type": "return_to_supplier",
                "reference_id": supplier_id,
                "moved_by": returned_by,
                "remarks": remark,
            }
        ],
    )
    return new_level


def low_stock_medicines(medicines, clinic_id: str) -> List[Dict[str, Any]]:
    return medicines.low_stock(clinic_id)


def expiring_medicines(
    medicines,
    clinic_id: str,
    days_ahead: int = EXPIRY_HORIZON_DAYS,
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    today = today or datetime.now().date()
    return medicines.expiring(clinic_id, today + timedelta(days=int(days_ahead)))


def _as_date(v: Any) -> Optional[date]:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v)[:10])
    except ValueError:
        return None


def sweep_stock_alerts(
    medicines,
    alerts,
    clinic_id: str,
    *,
    today: Optional[date] = None,
    horizon_days: int = EXPIRY_HORIZON_DAYS,
) -> Dict[str, int]:
    """Raise low-stock / expiring / expired alerts. Unresolved alerts are never duplicated."""
    today = today or datetime.now().date()
    created = {ALERT_LOW_STOCK: 0, ALERT_EXPIRING: 0, ALERT_EXPIRED: 0}

    for med in low_stock_medicines(medicines, clinic_id):
        msg = (
            f"{med.get('name')}: stock {int(med.get('current_stock') or 0)} "
            f"is at or below reorder level {int(med.get('reorder_level') or 0)}"
        )
        if alerts.open_alert(clinic_id, med["id"], ALERT_LOW_STOCK, msg):
            created[ALERT_LOW_STOCK] += 1

    for med in expiring_medicines(medicines, clinic_id, horizon_days, today=today):
        exp = _as_date(med.get("expiry_date"))
        if exp is None:
            continue
        if exp < today:
            alert_type = ALERT_EXPIRED
            msg = f"{med.get('name')} (batch {med.get('batch_number') or '-'}) expired on {exp.isoformat()}"
        else:
            alert_type = ALERT_EXPIRING
            msg = (
                f"{med.get('name')} (batch {med.get('batch_number') or '-'}) expires on {exp.isoformat()} "
                f"({(exp - today).days} days)"
            )
        if alerts.open_alert(clinic_id, med["id"], alert_type, msg):
            created[alert_type] += 1

    if any(created.values()):
        log.info("stock alerts clinic=%s created=%s", clinic_id, created)
    return created
