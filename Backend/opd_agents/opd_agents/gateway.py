# opd_agents/gateway.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .config import WHATSAPP_API_BASE, WHATSAPP_API_KEY, WHATSAPP_TIMEOUT_SEC

log = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    pass


class WhatsAppGateway:
    """HTTP client for the WhatsApp send-message function."""

    def __init__(
        self,
        base_url: str = WHATSAPP_API_BASE,
        api_key: str = WHATSAPP_API_KEY,
        timeout: int = WHATSAPP_TIMEOUT_SEC,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def send_message(
        self,
        *,
        phone: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        clinic_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/whatsapp-send-message"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "phone": phone,
            "message": message,
            "metadata": metadata or {},
            "userId": user_id,
            "clinicId": clinic_id,
        }

        try:
            r = self.session.post(url, headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise GatewayError(f"WhatsApp gateway unreachable: {e}") from e

        if r.status_code >= 400:
            detail = r.text[:300]
            try:
                body = r.json()
                if isinstance(body, dict) and body.get("message"):
                    detail = str(body["message"])
            except ValueError:
                pass
            raise GatewayError(f"WhatsApp gateway HTTP {r.status_code}: {detail}")

        try:
            data = r.json()
        except ValueError:
            data = {"raw": r.text}
        return data if isinstance(data, dict) else {"data": data}
