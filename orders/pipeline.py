"""
Fulfillment Pipeline Controller - seller production stages.

Stage flow (forward only, one step at a time):
    New -> In-Production -> QC -> Ready -> Shipped

Only paid orders take part: unpaid or cancelled orders never appear in a
queue and cannot be advanced. Rework has no backward edge; it is recorded in
``production_notes``. ``Shipped`` is entered through ``ship_order`` because it
needs the carrier's shipment details.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import models, transaction, DatabaseError
from django.db.models import F
from django.utils import timezone

from core.exceptions import (
    InvalidStateTransition,
    NotFound,
    OrderFlowError,
    OrderValidationError,
    PersistenceError,
)
from .lifecycle import invalidate_order_cache, transition_order
from .models import Order, PAID_STATUSES

logger = logging.getLogger(__name__)

Stage = Order.ProductionStatus

STAGE_FLOW = {
    Stage.NEW.value: Stage.IN_PRODUCTION.value,
    Stage.IN_PRODUCTION.value: Stage.QC.value,
    Stage.QC.value: Stage.READY.value,
    Stage.READY.value: Stage.SHIPPED.value,
}

QUEUE_STAGES = {
    'new': Stage.NEW.value,
    'production': Stage.IN_PRODUCTION.value,
    'qc': Stage.QC.value,
    'ready': Stage.READY.value,
}
CRITICAL_QUEUE = 'critical'
CRITICAL_STAGES = (Stage.NEW.value, Stage.IN_PRODUCTION.value)
CRITICAL_WINDOW = timedelta(hours=24)

UNSET = object()


class SLABand(models.TextChoices):
    BREACHED = 'BREACHED', 'Breached'
    URGENT = 'URGENT', 'Urgent'
    WARNING = 'WARNING', 'Warning'
    ON_TRACK = 'ON_TRACK', 'On Track'
    NO_SLA = 'NO_SLA', 'No SLA'


@dataclass(frozen=True)
class SLAInfo:
    band: str
    hours_remaining: int
    percent_elapsed: float


def compute_sla(
    target_ship_date: Optional[datetime],
    start_date: Optional[datetime],
    now: Optional[datetime] = None,
) -> SLAInfo:
    """
    Classify how close an order is to missing its target ship date.

    ``percent_elapsed`` is the share of the start->target window already
    used, clamped to [0, 100]. Hours are whole hours left, rounded down so
    they never disagree with the band; breached orders report the hours
    overdue, rounded up.
    """
    if target_ship_date is None:
        return SLAInfo(SLABand.NO_SLA, 0, 0.0)

    now = now or timezone.now()
    start = start_date or now
    hours_remaining = (target_ship_date - now).total_seconds() / 3600
    total = (target_ship_date - start).total_seconds()
    elapsed = (now - start).total_seconds()
    percent = min(100.0, max(0.0, elapsed / total * 100)) if total > 0 else 0.0

    if hours_remaining < 0:
        return SLAInfo(SLABand.BREACHED, math.ceil(-hours_remaining), 100.0)
    if hours_remaining < 24:
        band = SLABand.URGENT
    elif hours_remaining < 48:
        band = SLABand.WARNING
    else:
        band = SLABand.ON_TRACK
    return SLAInfo(band, math.floor(hours_remaining), round(percent, 1))


def _get_order(order_id, for_update: bool = False) -> Order:
    queryset = Order.objects.select_for_update() if for_update else Order.objects
    try:
        return queryset.get(pk=order_id)
    except (Order.DoesNotExist, ValueError, DjangoValidationError):
        raise NotFound("Order not found")


def _production_orders():
    return Order.objects.filter(status__in=PAID_STATUSES)


def pipeline_queue(stage: str, now: Optional[datetime] = None):
    """
    Orders waiting in a pipeline queue, most urgent target date first.

    Args:
        stage: One of 'new', 'production', 'qc', 'ready' or 'critical'
    """
    queryset = _production_orders().select_related('user').prefetch_related('items')

    if stage == CRITICAL_QUEUE:
        deadline = (now or timezone.now()) + CRITICAL_WINDOW
        queryset = queryset.filter(
            production_status__in=CRITICAL_STAGES,
            target_ship_date__lte=deadline
        )
    elif stage in QUEUE_STAGES:
        queryset = queryset.filter(production_status=QUEUE_STAGES[stage])
    else:
        raise OrderValidationError(f"Unknown pipeline stage: {stage}")

    return queryset.order_by(F('target_ship_date').asc(nulls_last=True), 'created_at')


def queue_counts(now: Optional[datetime] = None) -> Dict[str, int]:
    counts = {
        key: _production_orders().filter(production_status=value).count()
        for key, value in QUEUE_STAGES.items()
    }
    counts[CRITICAL_QUEUE] = pipeline_queue(CRITICAL_QUEUE, now=now).count()
    return counts


def advance_production(order_id, target_status: str, actor: str = '') -> Order:
    """
    Move a paid order to the next production stage.

    Raises:
        NotFound: Unknown order
        InvalidStateTransition: Unpaid order, skipped stage, backwards move,
            or a concurrent change won the race
        PersistenceError: Storage failed
    """
    if target_status not in STAGE_FLOW.values():
        raise InvalidStateTransition(f"Unknown production stage: {target_status}")
    if target_status == Stage.SHIPPED:
        raise InvalidStateTransition("Orders are marked shipped by recording the carrier shipment")

    try:
        with transaction.atomic():
            order = _get_order(order_id)
            if not order.is_paid:
                raise InvalidStateTransition("Order payment has not been confirmed")

            current = order.production_status
            if STAGE_FLOW.get(current) != target_status:
                raise InvalidStateTransition(f"Cannot move order from {current} to {target_status}")

            now = timezone.now()
            updates = {'production_status': target_status, 'updated_at': now}
            if target_status == Stage.IN_PRODUCTION:
                updates['start_date'] = now

            changed = Order.objects.filter(
                pk=order.pk,
                production_status=current,
                status__in=PAID_STATUSES
            ).update(**updates)
            if not changed:
                raise InvalidStateTransition("Order was changed by another request")

            transaction.on_commit(lambda: invalidate_order_cache(order.pk))
    except DatabaseError as e:
        logger.exception(f"Failed to advance order {order_id} to {target_status}: {e}")
        raise PersistenceError("Failed to update production status") from e

    logger.info(f"Order {order.pk}: production {current} -> {target_status} by {actor or 'staff'}")
    order.refresh_from_db()
    return order


def bulk_advance(order_ids: Iterable, target_status: str, actor: str = '') -> List[Dict]:
    """
    Apply ``advance_production`` to each order independently.

    A failure on one order neither stops nor rolls back the others.

    Returns:
        One ``{'order_id', 'success', 'error'}`` dict per requested id, in
        request order
    """
    results = []
    for order_id in order_ids:
        try:
            advance_production(order_id, target_status, actor=actor)
        except OrderFlowError as e:
            logger.warning(f"Bulk advance of order {order_id} to {target_status} failed: {e}")
            results.append({'order_id': str(order_id), 'success': False, 'error': e.public_message})
        else:
            results.append({'order_id': str(order_id), 'success': True, 'error': None})

    succeeded = sum(1 for r in results if r['success'])
    logger.info(f"Bulk advance to {target_status}: {succeeded}/{len(results)} succeeded")
    return results


def ship_order(order_id, shipment: Dict, actor: str) -> Order:
    """
    Record the carrier shipment for a packed order.

    Moves production Ready -> Shipped, stores the carrier metadata and asks
    the payment/delivery machine for PLACED -> SHIPPED. An order the carrier
    already reported as shipped or delivered keeps that status.
    """
    try:
        with transaction.atomic():
            order = _get_order(order_id, for_update=True)
            if not order.is_paid:
                raise InvalidStateTransition("Order payment has not been confirmed")
            if order.production_status != Stage.READY:
                raise InvalidStateTransition(
                    f"Only orders that are Ready can be shipped (currently {order.production_status})"
                )

            now = timezone.now()
            info = dict(order.shipping_info or {})
            for key in ('courier_name', 'awb_code', 'shipment_id', 'label_url', 'tracking_url'):
                if shipment.get(key):
                    info[key] = str(shipment[key])
            info['provider'] = shipment.get('provider') or 'MANUAL'
            info['shipped_date'] = now.isoformat()

            Order.objects.filter(pk=order.pk, production_status=Stage.READY).update(
                production_status=Stage.SHIPPED,
                shipping_info=info,
                updated_at=now
            )

            if order.status == Order.Status.PLACED:
                transition_order(
                    order.pk,
                    Order.Status.SHIPPED,
                    actor=actor,
                    notes=f"Dispatched via {info.get('courier_name', 'carrier')} "
                          f"(AWB {info.get('awb_code', 'pending')})",
                    from_statuses=[Order.Status.PLACED],
                )
            transaction.on_commit(lambda: invalidate_order_cache(order.pk))
    except DatabaseError as e:
        logger.exception(f"Failed to record shipment for order {order_id}: {e}")
        raise PersistenceError("Failed to record shipment") from e

    order.refresh_from_db()
    return order


def toggle_materials_available(order_id, available: bool) -> Order:
    """Set the advisory materials flag; it does not gate any transition."""
    try:
        order = _get_order(order_id)
        order.materials_available = bool(available)
        order.save(update_fields=['materials_available', 'updated_at'])
    except DatabaseError as e:
        logger.exception(f"Failed to update materials flag for order {order_id}: {e}")
        raise PersistenceError("Failed to update order") from e
    return order


def update_schedule(order_id, target_ship_date=UNSET, production_notes=None) -> Order:
    """Set the target ship date and/or production notes."""
    try:
        order = _get_order(order_id)
        fields = ['updated_at']
        if target_ship_date is not UNSET:
            order.target_ship_date = target_ship_date
            fields.append('target_ship_date')
        if production_notes is not None:
            order.production_notes = production_notes
            fields.append('production_notes')
        order.save(update_fields=fields)
    except DatabaseError as e:
        logger.exception(f"Failed to update schedule for order {order_id}: {e}")
        raise PersistenceError("Failed to update order") from e
    return order
