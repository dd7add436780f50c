import json
from datetime import datetime, date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any


def _json_safe(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {k: _json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_json_safe(v) for v in obj]
    return obj


def json_dumps(obj) -> str:
    return json.dumps(_json_safe(obj), ensure_ascii=False, default=str)


def json_loads(s) -> dict:
    if isinstance(s, dict):
        return s
    try:
        v = json.loads(s or "{}")
    except (TypeError, ValueError):
        return {}
    return v if isinstance(v, dict) else {}


def json_load_list(s) -> list:
    if isinstance(s, list):
        return s
    try:
        v = json.loads(s or "[]")
    except (TypeError, ValueError):
        return []
    return v if isinstance(v, list) else []


def now_dt() -> datetime:
    return datetime.now()


def _group_indian(int_part: str) -> str:
    # 1234567 -> 12,34,567
    if len(int_part) <= 3:
        return int_part
    head, tail = int_part[:-3], int_part[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def format_currency(amount) -> str:
    """
    500 -> "₹500", 123456.5 -> "₹1,23,456.5"
    Strings are assumed to be pre-formatted and returned untouched.
    """
    if isinstance(amount, str):
        return amount
    d = Decimal(str(amount or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if d < 0 else ""
    int_part, _, frac = format(abs(d), "f").partition(".")
    out = _group_indian(int_part)
    frac = frac.rstrip("0")
    if frac:
        out += "." + frac
    return f"{sign}₹{out}"


def format_message_datetime(value) -> str:
    """datetime -> '05 Mar 2026, 10:30 AM'"""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        return value.strftime("%d %b %Y, %I:%M %p")
    if isinstance(value, date):
        return value.strftime("%d %b %Y")
    return str(value or "")
