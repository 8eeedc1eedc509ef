"""
WhatsApp Cloud API delivery.

Sends the configured message template to one recipient, with the display
name as the single body parameter. Every outcome is reported as a
DeliveryResult; nothing raises to the caller.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .config import config_int

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com"


@dataclass
class DeliveryResult:
    ok: bool
    ack: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, ack=None) -> "DeliveryResult":
        return cls(ok=True, ack=ack)

    @classmethod
    def failure(cls, reason: str) -> "DeliveryResult":
        return cls(ok=False, error=reason)


class WhatsAppClient:
    """Template message sender for the WhatsApp Cloud API."""

    def __init__(
        self,
        phone_number_id: Optional[str],
        token: Optional[str],
        template_name: str = "avaliacao_pos_consulta_v1",
        language: str = "pt_BR",
        api_version: str = "v21.0",
        timeout: int = 20,
        session: Optional[requests.Session] = None,
    ):
        self.phone_number_id = phone_number_id
        self.token = token
        self.template_name = template_name
        self.language = language
        self.api_version = api_version
        self.timeout = timeout
        self.session = session or requests.Session()

        if not self.configured:
            logger.warning("Set PHONE_NUMBER_ID and WHATSAPP_TOKEN before dispatching messages.")

    @classmethod
    def from_env(cls, cfg: Dict[str, str], session: Optional[requests.Session] = None) -> "WhatsAppClient":
        return cls(
            phone_number_id=os.getenv("PHONE_NUMBER_ID"),
            token=os.getenv("WHATSAPP_TOKEN"),
            template_name=cfg["template_name"],
            language=cfg["template_language"],
            api_version=cfg["graph_api_version"],
            timeout=config_int(cfg, "delivery_timeout_seconds"),
            session=session,
        )

    @property
    def configured(self) -> bool:
        return bool(self.phone_number_id and self.token)

    @property
    def url(self) -> str:
        return f"{GRAPH_URL}/{self.api_version}/{self.phone_number_id}/messages"

    def build_payload(self, recipient: str, display_name: str) -> Dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "to": recipient,
            "type": "template",
            "template": {
                "name": self.template_name,
                "language": {"code": self.language},
                "components": [
                    {
                        "type": "body",
                        "parameters": [{"type": "text", "text": str(display_name).strip()}],
                    }
                ],
            },
        }

    def deliver(self, recipient: str, display_name: str) -> DeliveryResult:
        if not self.configured:
            return DeliveryResult.failure("WhatsApp credentials not configured")

        try:
            response = self.session.post(
                self.url,
                json=self.build_payload(recipient, display_name),
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"WhatsApp request failed for {recipient}: {e}")
            return DeliveryResult.failure(f"request failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.ok:
            reason = _error_message(data) or response.text[:200] or "no body"
            logger.error(f"WhatsApp API error {response.status_code} for {recipient}: {reason}")
            return DeliveryResult.failure(f"HTTP {response.status_code}: {reason}")

        return DeliveryResult.success(data)


def _error_message(data) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    err = data.get("error")
    if isinstance(err, dict):
        return err.get("message") or err.get("type")
    if err:
        return str(err)
    return None
