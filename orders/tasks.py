"""
Celery tasks for order processing.

Tasks:
    - send_order_status_notification: Email the customer after a status change
"""
import logging

from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    'PLACED': (
        "Order {short_id} confirmed",
        "We've received your payment of {currency} {total}. "
        "Your order is now being prepared."
    ),
    'SHIPPED': (
        "Order {short_id} has shipped",
        "Your order is on its way with {courier}. Tracking number: {awb}."
    ),
    'DELIVERED': (
        "Order {short_id} delivered",
        "Your order has been delivered. We hope you enjoy it!"
    ),
    'CANCELLED': (
        "Order {short_id} cancelled",
        "Your order has been cancelled. If you were charged, the amount will be refunded."
    ),
    'REFUNDED': (
        "Refund processed for order {short_id}",
        "Your refund of {currency} {total} has been processed to the original payment method."
    ),
}


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def send_order_status_notification(self, order_id: str, status: str):
    """
    Tell the customer their order moved to ``status``.

    Only customer-facing statuses produce an email; return review steps are
    communicated by support and are skipped here.

    Args:
        order_id: UUID of the order, as a string
        status: Status the order just entered

    Returns:
        Dict with the notification outcome
    """
    from orders.models import Order

    template = STATUS_MESSAGES.get(status)
    if template is None:
        logger.info(f"[CELERY] No customer notification for order {order_id} status {status}")
        return {'status': 'skipped', 'order_id': order_id}

    try:
        order = Order.objects.select_related('user').get(pk=order_id)
    except Order.DoesNotExist:
        logger.error(f"Order {order_id} not found for status notification")
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    recipient = order.user.email
    if not recipient:
        logger.warning(f"[CELERY] Order {order_id} customer has no email address, skipping")
        return {'status': 'skipped', 'order_id': order_id}

    shipping = order.shipping_info or {}
    subject, body = template
    context = {
        'short_id': order.short_id,
        'currency': order.currency,
        'total': order.total_amount,
        'courier': shipping.get('courier_name') or 'our courier partner',
        'awb': shipping.get('awb_code') or 'to be shared soon',
    }

    send_mail(
        subject.format(**context),
        body.format(**context),
        settings.DEFAULT_FROM_EMAIL,
        [recipient],
    )
    logger.info(f"[CELERY] Sent {status} notification for order {order_id} to {recipient}")

    return {
        'status': 'success',
        'order_id': order_id,
        'message': f'{status} notification sent'
    }
