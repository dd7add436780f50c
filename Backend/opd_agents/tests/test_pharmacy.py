from datetime import date

import pytest

from conftest import CLINIC
from fakes import FakeMedicines
from opd_agents.events import ALERT_EXPIRED, ALERT_EXPIRING, ALERT_LOW_STOCK, MOVEMENT_OUTWARD, MOVEMENT_RETURN
from opd_agents.pharmacy import (
    InsufficientStockError,
    MedicineNotFoundError,
    adjust_stock,
    compute_new_level,
    dispense,
    expiring_medicines,
    is_valid_level,
    low_stock_medicines,
    receive_inward,
    return_to_supplier,
    sweep_stock_alerts,
)

TODAY = date(2026, 3, 5)


@pytest.fixture
def medicines(stores):
    return stores.medicines


def test_level_validator():
    assert compute_new_level(100, -30) == 70
    assert is_valid_level(70)
    assert compute_new_level(10, -50) == -40
    assert not is_valid_level(-40)
    assert is_valid_level(compute_new_level(5, -5))


def test_decrease_adjustment_writes_ledger(medicines):
    med = medicines.add(CLINIC, "Paracetamol 500", 100)

    new_level = adjust_stock(medicines, CLINIC, med, quantity=30, direction="decrease", reason="damaged strip", adjusted_by="u1")

    assert new_level == 70
    assert medicines.rows[med]["current_stock"] == 70
    (entry,) = medicines.movements
    assert entry["movement_type"] == "adjustment"
    assert entry["quantity_change"] == -30
    assert entry["new_stock_level"] == 70
    assert entry["remarks"] == "Stock adjustment: damaged strip"
    assert entry["moved_by"] == "u1"


def test_adjustment_below_zero_is_rejected(medicines):
    med = medicines.add(CLINIC, "Amoxicillin", 10)

    with pytest.raises(InsufficientStockError) as exc:
        adjust_stock(medicines, CLINIC, med, quantity=50, direction="decrease", reason="count")

    assert "Current: 10, Change: -50" in str(exc.value)
    assert medicines.rows[med]["current_stock"] == 10
    assert medicines.movements == []


def test_stale_read_cannot_drive_stock_negative():
    class StaleMedicines(FakeMedicines):
        # another session dispensed after our read; the pre-flight sees the old level
        def get_medicine(self, clinic_id, medicine_id):
            row = super().get_medicine(clinic_id, medicine_id)
            if row:
                row["current_stock"] = 100
            return row

    medicines = StaleMedicines()
    med = medicines.add(CLINIC, "Cetirizine", 20)

    with pytest.raises(InsufficientStockError):
        adjust_stock(medicines, CLINIC, med, quantity=30, direction="decrease", reason="count")

    assert medicines.rows[med]["current_stock"] == 20
    assert medicines.movements == []


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"quantity": 0, "direction": "increase", "reason": "x"}, "valid quantity"),
        ({"quantity": "abc", "direction": "increase", "reason": "x"}, "valid quantity"),
        ({"quantity": 5, "direction": "increase", "reason": "   "}, "reason"),
        ({"quantity": 5, "direction": "sideways", "reason": "x"}, "direction"),
    ],
)
def test_adjustment_validation(medicines, kwargs, message):
    med = medicines.add(CLINIC, "ORS", 5)
    with pytest.raises(ValueError, match=message):
        adjust_stock(medicines, CLINIC, med, **kwargs)


def test_unknown_medicine(medicines):
    with pytest.raises(MedicineNotFoundError):
        adjust_stock(medicines, CLINIC, "nope", quantity=1, direction="increase", reason="x")


def test_medicine_from_another_clinic_is_not_found(medicines):
    med = medicines.add("clinic-2", "ORS", 5)
    with pytest.raises(MedicineNotFoundError):
        adjust_stock(medicines, CLINIC, med, quantity=1, direction="increase", reason="x")


def test_dispense_is_all_or_nothing(medicines):
    a = medicines.add(CLINIC, "A", 10)
    b = medicines.add(CLINIC, "B", 2)

    with pytest.raises(InsufficientStockError):
        dispense(medicines, CLINIC, [{"medicine_id": a, "quantity": 5}, {"medicine_id": b, "quantity": 3}], visit_id="v1")

    assert medicines.rows[a]["current_stock"] == 10
    assert medicines.rows[b]["current_stock"] == 2
    assert medicines.movements == []


def test_dispense_sums_repeated_lines_before_checking(medicines):
    a = medicines.add(CLINIC, "A", 6)
    with pytest.raises(InsufficientStockError):
        dispense(medicines, CLINIC, [{"medicine_id": a, "quantity": 4}, {"medicine_id": a, "quantity": 4}])
    assert medicines.rows[a]["current_stock"] == 6


def test_dispense_success(medicines):
    a = medicines.add(CLINIC, "A", 10)
    b = medicines.add(CLINIC, "B", 3)

    levels = dispense(
        medicines, CLINIC, [{"medicine_id": a, "quantity": 4}, {"medicine_id": b, "quantity": 3}],
        visit_id="visit-1", dispensed_by="pharm",
    )

    assert levels == [6, 0]
    assert {m["movement_type"] for m in medicines.movements} == {MOVEMENT_OUTWARD}
    assert all(m["reference_id"] == "visit-1" for m in medicines.movements)


def test_receive_inward(medicines):
    a = medicines.add(CLINIC, "A", 0)
    levels = receive_inward(medicines, CLINIC, [{"medicine_id": a, "quantity": 25}], receipt_id="r1", supplier_name="MedSupply")
    assert levels == [25]
    assert medicines.movements[0]["remarks"] == "Inward receipt from MedSupply"
    with pytest.raises(ValueError):
        receive_inward(medicines, CLINIC, [])


def test_return_to_supplier(medicines):
    a = medicines.add(CLINIC, "A", 8)
    assert return_to_supplier(medicines, CLINIC, a, quantity=3, reason="near expiry", supplier_id="s-9") == 5
    entry = medicines.movements[-1]
    assert entry["movement_type"] == MOVEMENT_RETURN
    assert entry["remarks"] == "Return to supplier: near expiry (Supplier ID: s-9)"
    with pytest.raises(InsufficientStockError):
        return_to_supplier(medicines, CLINIC, a, quantity=6, reason="x")


def test_low_stock_and_expiring_queries(medicines):
    low = medicines.add(CLINIC, "Low", 3, reorder_level=5)
    medicines.add(CLINIC, "Fine", 50, reorder_level=5)
    medicines.add(CLINIC, "NoReorder", 0)
    soon = medicines.add(CLINIC, "Soon", 10, expiry_date=date(2026, 3, 20))
    medicines.add(CLINIC, "Later", 10, expiry_date=date(2026, 6, 1))
    medicines.add(CLINIC, "Empty", 0, expiry_date=date(2026, 3, 10))

    assert [m["id"] for m in low_stock_medicines(medicines, CLINIC)] == [low]
    assert [m["id"] for m in expiring_medicines(medicines, CLINIC, 30, today=TODAY)] == [soon]


def test_sweep_raises_alerts_once(stores):
    medicines, alerts = stores.medicines, stores.alerts
    low = medicines.add(CLINIC, "Low", 2, reorder_level=10)
    expiring = medicines.add(CLINIC, "Soon", 10, expiry_date=date(2026, 3, 15), batch_number="B7")
    expired = medicines.add(CLINIC, "Old", 4, expiry_date=date(2026, 2, 1))

    first = sweep_stock_alerts(medicines, alerts, CLINIC, today=TODAY)
    second = sweep_stock_alerts(medicines, alerts, CLINIC, today=TODAY)

    assert first == {ALERT_LOW_STOCK: 1, ALERT_EXPIRING: 1, ALERT_EXPIRED: 1}
    assert second == {ALERT_LOW_STOCK: 0, ALERT_EXPIRING: 0, ALERT_EXPIRED: 0}
    by_med = {a["medicine_id"]: a for a in alerts.list_alerts(CLINIC)}
    assert by_med[low]["alert_type"] == ALERT_LOW_STOCK
    assert by_med[expiring]["message"] == "Soon (batch B7) expires on 2026-03-15 (10 days)"
    assert by_med[expired]["alert_type"] == ALERT_EXPIRED


def test_resolved_alert_can_be_raised_again(stores):
    medicines, alerts = stores.medicines, stores.alerts
    medicines.add(CLINIC, "Low", 1, reorder_level=5)
    sweep_stock_alerts(medicines, alerts, CLINIC, today=TODAY)
    (alert,) = alerts.list_alerts(CLINIC)
    assert alerts.resolve_alert(CLINIC, alert["id"], "u1")

    assert sweep_stock_alerts(medicines, alerts, CLINIC, today=TODAY)[ALERT_LOW_STOCK] == 1
