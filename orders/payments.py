"""
Payment Webhook Receiver - applies Razorpay events to orders.

Processing order:
1. Verify the HMAC-SHA256 signature over the raw request body
2. Skip events whose gateway event id was already processed
3. Resolve the internal order (notes.order_id, then gateway ids)
4. Apply a compare-and-swap transition guarded by the event timestamp

Replaying an event any number of times leaves exactly one ledger entry, and
an older event arriving after a newer one changes nothing. A customer may
retry a failed payment on the same gateway order, so a capture newer than the
failure that cancelled a never-paid order places it after all.
"""
import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timezone as dt_timezone
from typing import Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import transaction, DatabaseError, IntegrityError
from django.db.models import Q

from core.exceptions import InvalidSignature, MalformedPayload, PersistenceError
from returns.services import complete_refund
from .lifecycle import SYSTEM_PAYMENT_ACTOR, transition_order
from .models import Order, ProcessedWebhookEvent
from .webhooks import Outcome, WebhookResult, parse_json_body

logger = logging.getLogger(__name__)

CAPTURE_EVENTS = ('payment.captured', 'order.paid')


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> None:
    """
    Check the gateway signature against the literal request body.

    Raises:
        ImproperlyConfigured: If no webhook secret is configured
        InvalidSignature: If the signature is missing or wrong
    """
    if not secret:
        raise ImproperlyConfigured("RAZORPAY_WEBHOOK_SECRET is not set")
    if not signature:
        raise InvalidSignature("Missing signature")

    expected = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip()):
        raise InvalidSignature()


def _entity(event: dict, name: str) -> dict:
    payload = event.get('payload') or {}
    if not isinstance(payload, dict):
        raise MalformedPayload("Event payload must be a JSON object.")
    container = payload.get(name) or {}
    if not isinstance(container, dict):
        raise MalformedPayload(f"Event payload '{name}' must be a JSON object.")
    entity = container.get('entity') or {}
    if not isinstance(entity, dict):
        raise MalformedPayload(f"Event payload '{name}.entity' must be a JSON object.")
    return entity


def _notes(entity: dict) -> dict:
    # Razorpay sends an empty list when an entity has no notes
    notes = entity.get('notes')
    return notes if isinstance(notes, dict) else {}


def _event_time(event: dict) -> Optional[datetime]:
    created_at = event.get('created_at')
    if created_at in (None, ''):
        return None
    try:
        return datetime.fromtimestamp(int(created_at), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _token_guard(event_time: Optional[datetime]) -> Optional[Q]:
    if event_time is None:
        return None
    return Q(last_payment_event_at__isnull=True) | Q(last_payment_event_at__lte=event_time)


def _retry_guard(event_time: datetime) -> Q:
    # Strictly newer than the failure, and the order was never paid before
    newer = Q(last_payment_event_at__isnull=True) | Q(last_payment_event_at__lt=event_time)
    return newer & ~Q(status_history__status=Order.Status.PLACED)


def resolve_order(internal_id=None, razorpay_order_id='', razorpay_payment_id='') -> Optional[Order]:
    """
    Map an event to an order: internal id from notes first, then gateway ids.
    """
    if internal_id:
        try:
            order = Order.objects.filter(pk=uuid.UUID(str(internal_id))).first()
        except ValueError:
            logger.warning(f"Ignoring malformed order id in payment notes: {internal_id!r}")
            order = None
        if order is not None:
            return order

    if razorpay_order_id:
        order = Order.objects.filter(razorpay_order_id=razorpay_order_id).first()
        if order is not None:
            return order

    if razorpay_payment_id:
        return Order.objects.filter(razorpay_payment_id=razorpay_payment_id).first()

    return None


def _noop_outcome(order_id, event_time: Optional[datetime], target: str) -> str:
    """Label an event that changed nothing: stale, already there, or not applicable."""
    order = Order.objects.only('status', 'last_payment_event_at').get(pk=order_id)
    if event_time and order.last_payment_event_at and event_time < order.last_payment_event_at:
        return Outcome.STALE
    if order.status == target:
        return Outcome.ALREADY_APPLIED
    return Outcome.IGNORED


def _apply_capture(event_type: str, event: dict) -> WebhookResult:
    payment = _entity(event, 'payment')
    order_entity = _entity(event, 'order')
    razorpay_order_id = payment.get('order_id') or order_entity.get('id') or ''
    payment_id = payment.get('id') or ''
    internal_id = _notes(payment).get('order_id') or _notes(order_entity).get('order_id')

    order = resolve_order(internal_id, razorpay_order_id)
    if order is None:
        logger.warning(
            f"[Payment webhook] {event_type}: no order for notes id {internal_id!r} "
            f"/ gateway order {razorpay_order_id!r}"
        )
        return WebhookResult(Outcome.UNRESOLVED, event_type=event_type)

    updates = {}
    if payment_id:
        updates['razorpay_payment_id'] = payment_id
    if razorpay_order_id and not order.razorpay_order_id:
        updates['razorpay_order_id'] = razorpay_order_id
    event_time = _event_time(event)
    if event_time:
        updates['last_payment_event_at'] = event_time

    notes = f"Payment confirmed via {event_type} ({payment_id or 'no payment id'})"
    applied = transition_order(
        order.pk,
        Order.Status.PLACED,
        actor=SYSTEM_PAYMENT_ACTOR,
        notes=notes,
        from_statuses=[Order.Status.PENDING_PAYMENT],
        guard=_token_guard(event_time),
        updates=updates,
    )
    if not applied and event_time:
        # A retried payment succeeding after an earlier attempt failed
        applied = transition_order(
            order.pk,
            Order.Status.PLACED,
            actor=SYSTEM_PAYMENT_ACTOR,
            notes=f"{notes} after an earlier failed attempt",
            from_statuses=[Order.Status.CANCELLED],
            guard=_retry_guard(event_time),
            updates=updates,
        )
    if applied:
        return WebhookResult(Outcome.APPLIED, str(order.pk), event_type, Order.Status.PLACED)

    outcome = _noop_outcome(order.pk, event_time, Order.Status.PLACED)
    if outcome == Outcome.IGNORED:
        logger.warning(
            f"[Payment webhook] Payment {payment_id} captured for order {order.pk} "
            "that cannot be placed; needs a manual refund"
        )
    return WebhookResult(outcome, str(order.pk), event_type)


def _apply_failure(event_type: str, event: dict) -> WebhookResult:
    payment = _entity(event, 'payment')
    internal_id = _notes(payment).get('order_id')

    order = resolve_order(internal_id, payment.get('order_id') or '')
    if order is None:
        logger.warning(f"[Payment webhook] {event_type}: no order for payment {payment.get('id')!r}")
        return WebhookResult(Outcome.UNRESOLVED, event_type=event_type)

    event_time = _event_time(event)
    updates = {'last_payment_event_at': event_time} if event_time else None
    reason = payment.get('error_description') or payment.get('error_code') or 'payment failed'

    applied = transition_order(
        order.pk,
        Order.Status.CANCELLED,
        actor=SYSTEM_PAYMENT_ACTOR,
        notes=f"Cancelled due to payment failure: {reason}",
        from_statuses=[Order.Status.PENDING_PAYMENT],
        guard=_token_guard(event_time),
        updates=updates,
    )
    if applied:
        return WebhookResult(Outcome.APPLIED, str(order.pk), event_type, Order.Status.CANCELLED)

    outcome = _noop_outcome(order.pk, event_time, Order.Status.CANCELLED)
    return WebhookResult(outcome, str(order.pk), event_type)


def _apply_refund(event_type: str, event: dict) -> WebhookResult:
    refund = _entity(event, 'refund')
    payment = _entity(event, 'payment')
    payment_id = refund.get('payment_id') or payment.get('id') or ''
    internal_id = _notes(refund).get('order_id') or _notes(payment).get('order_id')

    order = resolve_order(internal_id, payment.get('order_id') or '', payment_id)
    if order is None:
        logger.warning(f"[Payment webhook] {event_type}: no order for payment {payment_id!r}")
        return WebhookResult(Outcome.UNRESOLVED, event_type=event_type)

    event_time = _event_time(event)
    applied = complete_refund(
        order,
        refund_id=refund.get('id') or '',
        actor=SYSTEM_PAYMENT_ACTOR,
        guard=_token_guard(event_time),
        updates={'last_payment_event_at': event_time} if event_time else None,
    )
    if applied:
        return WebhookResult(Outcome.APPLIED, str(order.pk), event_type, Order.Status.REFUNDED)

    outcome = _noop_outcome(order.pk, event_time, Order.Status.REFUNDED)
    return WebhookResult(outcome, str(order.pk), event_type)


def _apply_event(event_type: str, event: dict) -> WebhookResult:
    if event_type in CAPTURE_EVENTS:
        return _apply_capture(event_type, event)
    if event_type == 'payment.failed':
        return _apply_failure(event_type, event)
    if event_type == 'refund.processed':
        return _apply_refund(event_type, event)
    if event_type == 'payment.authorized':
        logger.info(f"[Payment webhook] Payment authorized: {_entity(event, 'payment').get('id')}")
    else:
        logger.info(f"[Payment webhook] Unhandled event type: {event_type}")
    return WebhookResult(Outcome.IGNORED, event_type=event_type)


def handle_payment_webhook(raw_body: bytes, signature: Optional[str], event_id: str = '') -> WebhookResult:
    """
    Verify and apply one payment-gateway delivery.

    Args:
        raw_body: Request body exactly as received
        signature: Value of the X-Razorpay-Signature header
        event_id: Value of the X-Razorpay-Event-Id header, if any

    Returns:
        WebhookResult describing what happened

    Raises:
        InvalidSignature: Signature missing or wrong (nothing processed)
        MalformedPayload: Authenticated body is not a JSON object
        PersistenceError: Storage failed; the gateway should retry
    """
    verify_signature(raw_body, signature, settings.RAZORPAY_WEBHOOK_SECRET)

    event = parse_json_body(raw_body)
    event_type = str(event.get('event') or '')
    event_id = event_id or str(event.get('id') or '')
    logger.info(f"[Payment webhook] Received event: {event_type} {event_id}")

    try:
        with transaction.atomic():
            if event_id and ProcessedWebhookEvent.objects.filter(
                provider=ProcessedWebhookEvent.Provider.RAZORPAY,
                event_id=event_id
            ).exists():
                logger.info(f"[Payment webhook] Event {event_id} already processed")
                return WebhookResult(Outcome.DUPLICATE, event_type=event_type)

            result = _apply_event(event_type, event)

            if event_id:
                ProcessedWebhookEvent.objects.create(
                    provider=ProcessedWebhookEvent.Provider.RAZORPAY,
                    event_id=event_id,
                    event_type=event_type,
                    order_id=result.order_id,
                    outcome=result.outcome,
                )
    except IntegrityError:
        # A concurrent delivery of the same event id committed first
        logger.info(f"[Payment webhook] Event {event_id} processed concurrently")
        return WebhookResult(Outcome.DUPLICATE, event_type=event_type)
    except DatabaseError as e:
        logger.exception(f"[Payment webhook] Storage error applying {event_type} {event_id}: {e}")
        raise PersistenceError("Failed to apply payment event") from e

    logger.info(f"[Payment webhook] {event_type} -> {result.outcome} (order {result.order_id})")
    return result
