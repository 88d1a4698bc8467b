"""
Shipment Webhook Receiver - applies carrier tracking updates to orders.

Carrier status text is classified through an explicit vocabulary table into
SHIPPED, DELIVERED or CANCELLED. Text outside the table is UNRECOGNIZED: the
tracking metadata (AWB, courier, shipment id, scan history) is still merged,
but the order status is left alone.
"""
import hmac
import logging
import re
from datetime import datetime
from typing import Optional

from django.conf import settings
from django.db import models, transaction, DatabaseError
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from core.exceptions import InvalidSignature, OrderNotResolved, PersistenceError
from .lifecycle import SYSTEM_CARRIER_ACTOR, can_transition, invalidate_order_cache, transition_order
from .models import Order
from .webhooks import Outcome, WebhookResult, parse_json_body

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}',
    re.IGNORECASE
)
CARRIER_TIMESTAMP_FORMATS = ('%d %m %Y %H:%M:%S', '%Y-%m-%d %H:%M:%S')
MAX_TRACKING_HISTORY = 100


class CarrierStatus(models.TextChoices):
    SHIPPED = 'SHIPPED', 'Shipped'
    DELIVERED = 'DELIVERED', 'Delivered'
    CANCELLED = 'CANCELLED', 'Cancelled'
    UNRECOGNIZED = 'UNRECOGNIZED', 'Unrecognized'


# Checked in order against the normalized text; the first match wins.
# Return-to-origin comes first so "RTO Delivered" or "RTO In Transit" cancel.
CARRIER_STATUS_RULES = (
    (re.compile(r'\brto\b'), CarrierStatus.CANCELLED),
    (re.compile(r'\bcancell?ed\b'), CarrierStatus.CANCELLED),
    (re.compile(r'\bnot delivered\b'), CarrierStatus.UNRECOGNIZED),
    (re.compile(r'\bdelivered\b'), CarrierStatus.DELIVERED),
    (re.compile(
        r'\b(?:manifest(?:ed)?|manifest generated|pickup|picked up|shipped|'
        r'in ?transit|out for delivery|reached at destination hub)\b'
    ), CarrierStatus.SHIPPED),
)


def normalize_carrier_status(text) -> str:
    return re.sub(r'[\s_\-]+', ' ', str(text or '')).strip().lower()


def map_carrier_status(text) -> str:
    """Classify free-text carrier status; text matching no rule is UNRECOGNIZED."""
    normalized = normalize_carrier_status(text)
    for pattern, carrier_status in CARRIER_STATUS_RULES:
        if pattern.search(normalized):
            return carrier_status
    return CarrierStatus.UNRECOGNIZED


def parse_carrier_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    value = str(value).strip()

    parsed = parse_datetime(value)
    if parsed is None:
        for fmt in CARRIER_TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def verify_token(api_key: Optional[str]) -> None:
    """Check the static carrier token when one is configured."""
    secret = settings.CARRIER_WEBHOOK_TOKEN
    if not secret:
        return
    if not api_key or not hmac.compare_digest(api_key, secret):
        logger.warning("[Carrier webhook] Unauthorized access attempt")
        raise InvalidSignature("Unauthorized")


def extract_order_id(payload: dict) -> str:
    """
    Find the internal order UUID, preferring ``channel_order_id``.

    Carriers often prefix the channel id (``"12345_<uuid>"``), so the first
    UUID-shaped substring wins.
    """
    for field in ('channel_order_id', 'order_id'):
        value = payload.get(field)
        if value in (None, ''):
            continue
        match = UUID_PATTERN.search(str(value))
        if match:
            return match.group(0).lower()
    raise OrderNotResolved("No valid order id in payload")


def merge_shipping_info(current: dict, payload: dict, received_at: datetime) -> dict:
    """Fold one carrier ping into the order's shipment metadata."""
    info = dict(current or {})
    raw_status = payload.get('current_status') or ''
    carrier_timestamp = payload.get('current_timestamp') or None

    if payload.get('awb'):
        info['awb_code'] = str(payload['awb'])
    if payload.get('courier_name'):
        info['courier_name'] = payload['courier_name']
    if payload.get('shipment_id'):
        info['shipment_id'] = str(payload['shipment_id'])
    if raw_status:
        info['carrier_status'] = raw_status
    info['last_update'] = received_at.isoformat()

    history = list(info.get('history') or [])
    last = history[-1] if history else None
    is_repeat = (
        last is not None
        and last.get('status') == raw_status
        and last.get('carrier_timestamp') == carrier_timestamp
    )
    if raw_status and not is_repeat:
        scans = payload.get('scans') or []
        history.append({
            'status': raw_status,
            'carrier_timestamp': carrier_timestamp,
            'received_at': received_at.isoformat(),
            'details': scans[-1] if scans else None,
        })
    info['history'] = history[-MAX_TRACKING_HISTORY:]
    return info


def handle_shipment_webhook(raw_body: bytes, api_key: Optional[str] = None) -> WebhookResult:
    """
    Verify and apply one carrier tracking update.

    Raises:
        InvalidSignature: Configured token missing or wrong
        MalformedPayload: Body is not a JSON object
        OrderNotResolved: No well-formed or known order id in the payload
        PersistenceError: Storage failed
    """
    verify_token(api_key)
    payload = parse_json_body(raw_body)

    order_id = extract_order_id(payload)
    raw_status = payload.get('current_status') or ''
    mapped = map_carrier_status(raw_status)
    event_time = parse_carrier_timestamp(payload.get('current_timestamp'))
    now = timezone.now()

    try:
        with transaction.atomic():
            order = Order.objects.select_for_update().filter(pk=order_id).first()
            if order is None:
                raise OrderNotResolved(f"Order {order_id} not found")

            if event_time and order.last_carrier_event_at and event_time < order.last_carrier_event_at:
                logger.info(f"[Carrier webhook] Stale update for order {order_id}: {raw_status!r}")
                return WebhookResult(Outcome.STALE, order_id, raw_status, order.status)

            fields = {
                'shipping_info': merge_shipping_info(order.shipping_info, payload, now),
                'updated_at': now,
            }
            if event_time:
                fields['last_carrier_event_at'] = event_time
            Order.objects.filter(pk=order.pk).update(**fields)

            if mapped == CarrierStatus.UNRECOGNIZED:
                logger.info(f"[Carrier webhook] Unrecognized status {raw_status!r} for order {order_id}")
                outcome, status = Outcome.METADATA_ONLY, order.status
            elif mapped == order.status:
                outcome, status = Outcome.ALREADY_APPLIED, order.status
            elif can_transition(order.status, mapped):
                target = Order.Status(mapped.value)
                transition_order(
                    order.pk,
                    target,
                    actor=SYSTEM_CARRIER_ACTOR,
                    notes=f"Status updated via carrier webhook: {raw_status}",
                    from_statuses=[order.status],
                )
                outcome, status = Outcome.APPLIED, target
            else:
                logger.info(
                    f"[Carrier webhook] Ignoring {order.status} -> {mapped} for order {order_id}"
                )
                outcome, status = Outcome.METADATA_ONLY, order.status

            transaction.on_commit(lambda: invalidate_order_cache(order_id))
    except DatabaseError as e:
        logger.exception(f"[Carrier webhook] Update failed for order {order_id}: {e}")
        raise PersistenceError("Failed to apply shipment update") from e

    return WebhookResult(outcome, order_id, raw_status, status)
