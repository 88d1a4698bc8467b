"""
Payment/delivery state machine for orders.

``transition_order`` is the only code path that writes ``Order.status``. It
is a compare-and-swap: the UPDATE is filtered on the statuses the target may
be reached from, so a concurrent writer that got there first turns the
second attempt into a no-op instead of an overwrite. A ledger row is appended
only when the UPDATE actually changed a row.
"""
import logging
from typing import Iterable, Optional

from django.core.cache import cache
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .models import Order, OrderStatusHistory

logger = logging.getLogger(__name__)

Status = Order.Status

ALLOWED_TRANSITIONS = {
    Status.PENDING_PAYMENT: (Status.PLACED, Status.CANCELLED),
    Status.PLACED: (Status.SHIPPED, Status.DELIVERED, Status.CANCELLED, Status.RETURN_REQUESTED),
    Status.SHIPPED: (Status.DELIVERED, Status.CANCELLED),
    Status.DELIVERED: (Status.RETURN_REQUESTED,),
    Status.RETURN_REQUESTED: (Status.RETURN_APPROVED, Status.RETURN_REJECTED),
    Status.RETURN_APPROVED: (Status.REFUNDED,),
    # Payment retry: only the payment receiver requests this edge, for a
    # capture newer than the failure that cancelled a never-paid order.
    Status.CANCELLED: (Status.PLACED,),
    Status.RETURN_REJECTED: (),
    Status.REFUNDED: (),
}

SYSTEM_PAYMENT_ACTOR = 'system (payment webhook)'
SYSTEM_CARRIER_ACTOR = 'system (carrier webhook)'


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


def sources_for(target: str) -> list:
    """Statuses from which ``target`` is reachable in one step."""
    return [source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets]


def order_cache_key(order_id) -> str:
    return f"order_summary:{order_id}"


def invalidate_order_cache(order_id) -> None:
    cache.delete(order_cache_key(order_id))


def _after_transition(order_id, status: str) -> None:
    invalidate_order_cache(order_id)

    try:
        from .tasks import send_order_status_notification
        send_order_status_notification.delay(str(order_id), str(status))
    except Exception as e:
        # Don't fail the transition if task queuing fails
        logger.error(f"Failed to queue status notification for order {order_id}: {e}")


def transition_order(
    order_id,
    target: str,
    *,
    actor: str,
    notes: str = '',
    from_statuses: Optional[Iterable[str]] = None,
    guard: Optional[Q] = None,
    updates: Optional[dict] = None,
) -> bool:
    """
    Move an order to ``target`` if its current status allows it.

    Args:
        order_id: Primary key of the order
        target: Status to move to
        actor: Who caused the change, recorded in the ledger
        notes: Free-text ledger note
        from_statuses: Narrow the legal source statuses further
        guard: Extra filter the row must satisfy (e.g. an ordering token)
        updates: Additional fields written in the same UPDATE

    Returns:
        True if the order changed status, False if the swap did not match
        (already there, moved on, or never eligible).
    """
    sources = sources_for(target)
    if from_statuses is not None:
        allowed = set(from_statuses)
        sources = [s for s in sources if s in allowed]
    if not sources:
        return False

    with transaction.atomic():
        queryset = Order.objects.filter(pk=order_id, status__in=sources)
        if guard is not None:
            queryset = queryset.filter(guard)

        fields = {'status': target, 'updated_at': timezone.now()}
        if updates:
            fields.update(updates)

        if queryset.update(**fields) == 0:
            return False

        OrderStatusHistory.objects.create(
            order_id=order_id,
            status=target,
            changed_by=actor,
            notes=notes
        )
        transaction.on_commit(lambda: _after_transition(order_id, target))

    logger.info(f"Order {order_id} -> {target} ({actor})")
    return True
