"""
Return Service Layer - return requests, review and refund completion.

The return workflow never writes ``Order.status`` itself. It asks
``orders.lifecycle.transition_order`` for the matching order transition in
the same transaction, and rolls back its own change when that request is
refused. The order reaches REFUNDED only through ``complete_refund``, which
the payment webhook calls when the gateway confirms the refund.
"""
import logging
from typing import Dict, List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction, DatabaseError, IntegrityError
from django.db.models import Q
from django.utils import timezone

from core.exceptions import (
    Forbidden,
    InvalidStateTransition,
    NotFound,
    OrderValidationError,
    PersistenceError,
)
from orders.lifecycle import transition_order
from orders.models import Order
from orders.services import require_user
from .models import ACTIVE_RETURN_STATUSES, ReturnItem, ReturnRequest

logger = logging.getLogger(__name__)

ReturnStatus = ReturnRequest.Status

RETURN_TRANSITIONS = {
    ReturnStatus.REQUESTED.value: (
        ReturnStatus.APPROVED.value,
        ReturnStatus.REJECTED.value,
        ReturnStatus.PICKUP_SCHEDULED.value,
    ),
    ReturnStatus.APPROVED.value: (
        ReturnStatus.REFUND_INITIATED.value,
        ReturnStatus.PICKUP_SCHEDULED.value,
    ),
    ReturnStatus.PICKUP_SCHEDULED.value: (
        ReturnStatus.APPROVED.value,
        ReturnStatus.REJECTED.value,
        ReturnStatus.REFUND_INITIATED.value,
    ),
    ReturnStatus.REFUND_INITIATED.value: (
        ReturnStatus.REFUND_COMPLETED.value,
    ),
}

# Order status each return status asks for. Starting a refund implies the
# return was accepted, so it also requests RETURN_APPROVED.
ORDER_PROJECTIONS = {
    ReturnStatus.APPROVED.value: Order.Status.RETURN_APPROVED,
    ReturnStatus.REJECTED.value: Order.Status.RETURN_REJECTED,
    ReturnStatus.REFUND_INITIATED.value: Order.Status.RETURN_APPROVED,
}

RETURNABLE_ORDER_STATUSES = (Order.Status.PLACED, Order.Status.DELIVERED)


def _actor_name(user) -> str:
    return getattr(user, 'username', '') or str(user.pk)


def _require_staff(user):
    require_user(user)
    if not user.is_staff:
        raise Forbidden()
    return user


def _resolve_return_items(order: Order, items: Optional[List[Dict]]) -> List[ReturnItem]:
    """
    Validate requested items against the order's own line items.

    An empty item list returns the whole order.
    """
    order_items = {str(item.pk): item for item in order.items.all()}

    if not items:
        return [
            ReturnItem(order_item=item, quantity=item.quantity)
            for item in order_items.values()
        ]

    seen = set()
    resolved = []
    for idx, item in enumerate(items):
        key = str(item.get('order_item_id', ''))
        order_item = order_items.get(key)
        if order_item is None:
            raise OrderValidationError(f"Item {idx}: not part of this order")
        if key in seen:
            raise OrderValidationError(f"Item {idx}: listed more than once")
        seen.add(key)

        quantity = item.get('quantity', order_item.quantity)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise OrderValidationError(f"Item {idx}: quantity must be a positive integer")
        if quantity > order_item.quantity:
            raise OrderValidationError(
                f"Item {idx}: cannot return {quantity}, only {order_item.quantity} ordered"
            )
        resolved.append(ReturnItem(
            order_item=order_item,
            quantity=quantity,
            reason=str(item.get('reason') or '')[:255]
        ))
    return resolved


def create_return(user, order_id, reason: str, items: Optional[List[Dict]] = None) -> ReturnRequest:
    """
    Open a return for one of the caller's orders.

    Args:
        user: Authenticated customer
        order_id: Order being returned
        reason: Customer's explanation
        items: Optional list of {'order_item_id', 'quantity', 'reason'}

    Returns:
        The new ReturnRequest in 'requested' status

    Raises:
        NotFound: Order missing or owned by someone else
        InvalidStateTransition: Order is not PLACED or DELIVERED, or already
            has an active return
        OrderValidationError: Bad reason or items
        PersistenceError: Storage failed
    """
    require_user(user)
    if not reason or not str(reason).strip():
        raise OrderValidationError("A reason is required")

    try:
        order = Order.objects.prefetch_related('items').get(pk=order_id)
    except (Order.DoesNotExist, ValueError, DjangoValidationError):
        raise NotFound("Order not found")
    if order.user_id != user.pk:
        raise NotFound("Order not found")

    if order.status not in RETURNABLE_ORDER_STATUSES:
        raise InvalidStateTransition(
            f"Returns can only be requested for paid or delivered orders (currently {order.status})"
        )
    return_items = _resolve_return_items(order, items)

    try:
        with transaction.atomic():
            requested = transition_order(
                order.pk,
                Order.Status.RETURN_REQUESTED,
                actor=_actor_name(user),
                notes=f"Return requested: {reason}",
                from_statuses=RETURNABLE_ORDER_STATUSES,
            )
            if not requested:
                raise InvalidStateTransition("Order status changed, return cannot be requested")

            return_request = ReturnRequest.objects.create(
                order=order,
                user=user,
                reason=reason,
                refund_amount=order.total_amount,
            )
            for item in return_items:
                item.return_request = return_request
            ReturnItem.objects.bulk_create(return_items)
    except IntegrityError:
        raise InvalidStateTransition("This order already has an open return")
    except DatabaseError as e:
        logger.exception(f"Failed to create return for order {order_id}: {e}")
        raise PersistenceError("Failed to create return") from e

    order.refresh_from_db()
    logger.info(f"Return {return_request.id} requested for order {order.pk} by user {user.pk}")
    return return_request


def _project_onto_order(return_request: ReturnRequest, new_status: str, actor: str) -> None:
    target = ORDER_PROJECTIONS.get(new_status)
    if target is None:
        return

    current = Order.objects.values_list('status', flat=True).get(pk=return_request.order_id)
    if current == target:
        return
    applied = transition_order(
        return_request.order_id,
        target,
        actor=actor,
        notes=f"Return {return_request.id} {new_status}",
    )
    if not applied:
        raise InvalidStateTransition(f"Order cannot move from {current} to {target}")


def update_return_status(user, return_id, new_status: str, admin_notes: Optional[str] = None) -> ReturnRequest:
    """
    Move a return along its review flow (staff only).

    Raises:
        Unauthenticated / Forbidden: Caller is not staff
        NotFound: Unknown return
        OrderValidationError: Unknown status value
        InvalidStateTransition: Edge not allowed, refund completion attempted
            by hand, or the order refused the matching transition
        PersistenceError: Storage failed
    """
    _require_staff(user)

    if new_status not in ReturnStatus.values:
        raise OrderValidationError(f"Unknown return status: {new_status}")
    if new_status == ReturnStatus.REFUND_COMPLETED:
        raise InvalidStateTransition("Refunds are completed by the payment gateway confirmation")

    actor = _actor_name(user)
    try:
        with transaction.atomic():
            try:
                return_request = ReturnRequest.objects.select_for_update().get(pk=return_id)
            except (ReturnRequest.DoesNotExist, ValueError, DjangoValidationError):
                raise NotFound("Return not found")

            current = return_request.status
            if new_status not in RETURN_TRANSITIONS.get(current, ()):
                raise InvalidStateTransition(f"Cannot move return from {current} to {new_status}")

            fields = {'status': new_status, 'updated_at': timezone.now()}
            if admin_notes is not None:
                fields['admin_notes'] = admin_notes
            changed = ReturnRequest.objects.filter(
                pk=return_request.pk,
                status=current
            ).update(**fields)
            if not changed:
                raise InvalidStateTransition("Return was changed by another request")

            _project_onto_order(return_request, new_status, actor)
    except DatabaseError as e:
        logger.exception(f"Failed to update return {return_id} to {new_status}: {e}")
        raise PersistenceError("Failed to update return") from e

    logger.info(f"Return {return_id}: {current} -> {new_status} by {actor}")
    return_request.refresh_from_db()
    return return_request


def complete_refund(
    order: Order,
    refund_id: str,
    actor: str,
    guard: Optional[Q] = None,
    updates: Optional[dict] = None,
) -> bool:
    """
    Mark an approved return refunded after the gateway confirms it.

    Returns:
        True if the order moved to REFUNDED, False if it was not eligible
        (already refunded, or no approved return)
    """
    with transaction.atomic():
        applied = transition_order(
            order.pk,
            Order.Status.REFUNDED,
            actor=actor,
            notes=f"Refund {refund_id or 'unknown'} processed by gateway",
            from_statuses=[Order.Status.RETURN_APPROVED],
            guard=guard,
            updates=updates,
        )
        if not applied:
            return False

        completed = ReturnRequest.objects.filter(
            order_id=order.pk,
            status__in=ACTIVE_RETURN_STATUSES
        ).exclude(status=ReturnStatus.REQUESTED).update(
            status=ReturnStatus.REFUND_COMPLETED,
            refund_reference=refund_id or '',
            updated_at=timezone.now()
        )

    if not completed:
        logger.warning(f"Order {order.pk} refunded without an open return request")
    logger.info(f"Refund {refund_id} completed for order {order.pk}")
    return True


def get_user_returns(user):
    require_user(user)
    queryset = ReturnRequest.objects.select_related('order').prefetch_related('items__order_item')
    if not user.is_staff:
        queryset = queryset.filter(user=user)
    return queryset.order_by('-created_at')


def get_all_returns(user):
    """Every return, newest first (staff only)."""
    _require_staff(user)
    return ReturnRequest.objects.select_related('order', 'user').prefetch_related(
        'items__order_item'
    ).order_by('-created_at')
