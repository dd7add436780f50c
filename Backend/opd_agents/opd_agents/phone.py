# opd_agents/phone.py
from __future__ import annotations

import re
from typing import Optional

from .config import DEFAULT_COUNTRY_CODE

_NON_DIGIT = re.compile(r"\D")


def _digits(phone: Optional[str]) -> str:
    return _NON_DIGIT.sub("", str(phone or ""))


def normalize_phone(phone: Optional[str], default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Format a phone number for the WhatsApp gateway (international form, digits only).

      "08780465286"     -> "918780465286"
      "8780465286"      -> "918780465286"
      "+91 87804 65286" -> "918780465286"
      "(878) 046-5286"  -> "918780465286"
    """
    if not phone:
        return ""

    cleaned = _digits(phone).lstrip("0")

    # plain 10-digit mobile, even one that happens to start with the country code
    if len(cleaned) == 10:
        return f"{default_country_code}{cleaned}"

    if cleaned.startswith(default_country_code):
        return cleaned

    # "1XXXXXXXXXX": a 91-prefixed number that lost its leading 9
    if default_country_code == "91" and len(cleaned) == 11 and cleaned.startswith("1"):
        return f"9{cleaned}"

    return f"{default_country_code}{cleaned}"


def is_valid_whatsapp_phone(phone: Optional[str]) -> bool:
    cleaned = _digits(phone)
    return 10 <= len(cleaned) <= 15


def format_phone_for_display(phone: Optional[str]) -> str:
    """'918780465286' -> '+91 87804 65286'"""
    if not phone:
        return ""

    cleaned = _digits(phone)

    if cleaned.startswith("91") and len(cleaned) == 12:
        return f"+91 {cleaned[2:7]} {cleaned[7:]}"

    if len(cleaned) >= 10:
        cc, main = cleaned[:-10], cleaned[-10:]
        return f"+{cc} {main}" if cc else main

    return phone
