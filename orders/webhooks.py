"""
Shared plumbing for the payment and carrier webhook receivers.
"""
import json
from dataclasses import dataclass
from typing import Optional

from core.exceptions import MalformedPayload


class Outcome:
    """How a delivered webhook event was handled."""
    APPLIED = 'applied'
    ALREADY_APPLIED = 'already_applied'
    METADATA_ONLY = 'metadata_only'
    DUPLICATE = 'duplicate'
    STALE = 'stale'
    IGNORED = 'ignored'
    UNRESOLVED = 'unresolved'


@dataclass
class WebhookResult:
    outcome: str
    order_id: Optional[str] = None
    event_type: str = ''
    status: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            'outcome': self.outcome,
            'order_id': self.order_id,
            'event': self.event_type or None,
            'status': self.status,
        }


def parse_json_body(raw_body: bytes) -> dict:
    """Decode a webhook body that has already been authenticated."""
    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise MalformedPayload()
    if not isinstance(payload, dict):
        raise MalformedPayload("Webhook payload must be a JSON object.")
    return payload
