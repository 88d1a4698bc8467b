"""
Order Service Layer - Atomic order intake and order reads.

Order creation writes the order row and every line item in one transaction:
if any item insert fails the order row is rolled back with it and the caller
gets a PersistenceError, never a payable order without items.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import List, Dict, Optional

from django.core.cache import cache
from django.core.exceptions import ValidationError as DjangoValidationError
from django.conf import settings
from django.db import transaction, DatabaseError

from core.exceptions import (
    NotFound,
    OrderValidationError,
    PersistenceError,
    Unauthenticated,
)
from .lifecycle import order_cache_key
from .models import Order, OrderItem, OrderStatusHistory

logger = logging.getLogger(__name__)


def require_user(user):
    """Return ``user`` if it is an authenticated identity, else raise."""
    if user is None or not getattr(user, 'is_authenticated', False):
        raise Unauthenticated()
    return user


def _to_decimal(value, label: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise OrderValidationError(f"{label} must be a number")
    if not amount.is_finite():
        raise OrderValidationError(f"{label} must be a number")
    return amount


def validate_order_items(items: List[Dict]) -> None:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'product_id', 'quantity' and 'price'

    Raises:
        OrderValidationError: If validation fails
    """
    if not items:
        raise OrderValidationError("Order must contain at least one item")

    for idx, item in enumerate(items):
        if not item.get('product_id'):
            raise OrderValidationError(f"Item {idx}: missing 'product_id'")
        if 'quantity' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'quantity'")
        if 'price' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'price'")

        quantity = item['quantity']
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise OrderValidationError(f"Item {idx}: quantity must be a positive integer")

        if _to_decimal(item['price'], f"Item {idx}: price") < 0:
            raise OrderValidationError(f"Item {idx}: price cannot be negative")


def create_order(
    user,
    total_amount,
    shipping_address: Dict,
    billing_address: Dict,
    items: List[Dict],
    razorpay_order_id: str = '',
    payment_id: str = '',
    tax_breakdown: Optional[Dict] = None,
) -> Order:
    """
    Create an order and its line items as one atomic unit.

    Args:
        user: Authenticated caller placing the order
        total_amount: Order total, fixed from here on
        shipping_address: Structured shipping address
        billing_address: Structured billing address
        items: List of dicts with 'product_id', 'quantity' and 'price'
        razorpay_order_id: Gateway order id created before checkout
        payment_id: Gateway payment id if already known
        tax_breakdown: Optional tax components

    Returns:
        The created Order in PENDING_PAYMENT status

    Raises:
        Unauthenticated: If there is no caller identity
        OrderValidationError: If the input is malformed
        PersistenceError: If the store rejects any of the writes
    """
    require_user(user)
    validate_order_items(items)

    total = _to_decimal(total_amount, "total_amount")
    if total <= 0:
        raise OrderValidationError("total_amount must be positive")

    try:
        with transaction.atomic():
            order = Order.objects.create(
                user=user,
                total_amount=total,
                shipping_address=shipping_address or {},
                billing_address=billing_address or {},
                tax_breakdown=tax_breakdown,
                razorpay_order_id=razorpay_order_id or '',
                razorpay_payment_id=payment_id or '',
                status=Order.Status.PENDING_PAYMENT,
            )

            order_items = [
                OrderItem(
                    order=order,
                    product_ref=str(item['product_id']),
                    quantity=item['quantity'],
                    price_at_purchase=_to_decimal(item['price'], 'price'),
                )
                for item in items
            ]
            OrderItem.objects.bulk_create(order_items)
    except DatabaseError as e:
        logger.exception(f"Failed to create order for user {user.pk}: {e}")
        raise PersistenceError("Failed to create order") from e

    logger.info(
        f"Created order {order.id} for user {user.pk}: "
        f"{len(order_items)} items, total {total}"
    )
    return order


def get_user_orders(user):
    """Orders visible to ``user``: their own, or every order for staff."""
    require_user(user)
    queryset = Order.objects.prefetch_related('items')
    if not user.is_staff:
        queryset = queryset.filter(user=user)
    return queryset.order_by('-created_at')


def get_order_for_user(user, order_id) -> Order:
    """
    Fetch one order the caller may see.

    Raises:
        NotFound: If the order doesn't exist or belongs to someone else
    """
    require_user(user)
    try:
        order = Order.objects.prefetch_related('items').get(pk=order_id)
    except (Order.DoesNotExist, ValueError, DjangoValidationError):
        raise NotFound("Order not found")

    if order.user_id != user.pk and not user.is_staff:
        raise NotFound("Order not found")
    return order


def get_order_history(user, order_id):
    order = get_order_for_user(user, order_id)
    return OrderStatusHistory.objects.filter(order=order).order_by('changed_at', 'id')


def get_order_summary(order_id) -> Dict:
    """
    Get order summary, cached until the next status transition.
    """
    key = order_cache_key(order_id)
    summary = cache.get(key)
    if summary is not None:
        return summary

    order = Order.objects.prefetch_related('items').get(pk=order_id)
    summary = {
        'id': str(order.id),
        'status': order.status,
        'production_status': order.production_status,
        'total_amount': str(order.total_amount),
        'currency': order.currency,
        'item_count': len(order.items.all()),
        'items': [
            {
                'product_id': item.product_ref,
                'quantity': item.quantity,
                'price_at_purchase': str(item.price_at_purchase),
                'subtotal': str(item.subtotal)
            }
            for item in order.items.all()
        ],
        'shipping_info': order.shipping_info or None,
        'created_at': order.created_at.isoformat(),
        'updated_at': order.updated_at.isoformat()
    }
    cache.set(key, summary, settings.ORDER_CACHE_TIMEOUT)
    return summary
