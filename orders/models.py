"""
Order Models - Order, OrderItem, status ledger and processed webhook events.

An order carries two independent state machines:

    status (payment/delivery):
        PENDING_PAYMENT -> PLACED -> SHIPPED -> DELIVERED
        PENDING_PAYMENT -> CANCELLED (payment failed / voided)
        PLACED|DELIVERED -> RETURN_REQUESTED -> RETURN_APPROVED -> REFUNDED
                                             -> RETURN_REJECTED

    production_status (seller pipeline):
        New -> In-Production -> QC -> Ready -> Shipped

Transitions are applied only through ``orders.lifecycle``.
"""
import uuid
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models


class Order(models.Model):
    """
    Order aggregate root.

    ``total_amount`` is fixed at creation; line items keep their own price
    snapshot and the total is never recomputed from them.
    """

    class Status(models.TextChoices):
        PENDING_PAYMENT = 'PENDING_PAYMENT', 'Payment Pending'
        PLACED = 'PLACED', 'Paid'
        SHIPPED = 'SHIPPED', 'Shipped'
        DELIVERED = 'DELIVERED', 'Delivered'
        CANCELLED = 'CANCELLED', 'Cancelled'
        RETURN_REQUESTED = 'RETURN_REQUESTED', 'Return Requested'
        RETURN_APPROVED = 'RETURN_APPROVED', 'Return Approved'
        RETURN_REJECTED = 'RETURN_REJECTED', 'Return Rejected'
        REFUNDED = 'REFUNDED', 'Refunded'

    class ProductionStatus(models.TextChoices):
        NEW = 'New', 'New'
        IN_PRODUCTION = 'In-Production', 'In Production'
        QC = 'QC', 'Quality Check'
        READY = 'Ready', 'Ready to Pack'
        SHIPPED = 'Shipped', 'Shipped'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='orders',
        help_text="Customer who placed the order"
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING_PAYMENT,
        db_index=True,
        help_text="Payment/delivery lifecycle status"
    )
    production_status = models.CharField(
        max_length=20,
        choices=ProductionStatus.choices,
        default=ProductionStatus.NEW,
        db_index=True,
        help_text="Seller production pipeline stage"
    )
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Order total, fixed at creation"
    )
    currency = models.CharField(max_length=3, default='INR')
    shipping_address = models.JSONField(default=dict)
    billing_address = models.JSONField(default=dict)
    tax_breakdown = models.JSONField(null=True, blank=True)

    razorpay_order_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    razorpay_payment_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    last_payment_event_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Gateway timestamp of the newest applied payment event"
    )

    shipping_info = models.JSONField(default=dict, blank=True)
    last_carrier_event_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Carrier timestamp of the newest applied tracking update"
    )

    start_date = models.DateTimeField(null=True, blank=True)
    target_ship_date = models.DateTimeField(null=True, blank=True, db_index=True)
    materials_available = models.BooleanField(default=False)
    production_notes = models.TextField(blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'status'], name='order_user_status_idx'),
            models.Index(fields=['production_status', 'target_ship_date'], name='order_pipeline_idx'),
        ]

    def __str__(self):
        return f"Order {self.short_id} ({self.status})"

    @property
    def short_id(self) -> str:
        return str(self.id)[:8].upper()

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATUSES

    @property
    def item_count(self) -> int:
        return self.items.count()


PAID_STATUSES = (
    Order.Status.PLACED,
    Order.Status.SHIPPED,
    Order.Status.DELIVERED,
)


class OrderItem(models.Model):
    """
    Line item of an order.

    Stores the unit price at time of purchase to preserve historical pricing.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items',
        help_text="Parent order"
    )
    product_ref = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Catalog product reference"
    )
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Quantity ordered"
    )
    price_at_purchase = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price per unit at time of purchase"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.product_ref} @ {self.price_at_purchase}"

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.price_at_purchase


class OrderStatusHistory(models.Model):
    """Append-only ledger: one row per applied status transition."""
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='status_history'
    )
    status = models.CharField(max_length=20, choices=Order.Status.choices)
    changed_by = models.CharField(max_length=100)
    notes = models.TextField(blank=True, default='')
    changed_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = 'Order Status History'
        verbose_name_plural = 'Order Status History'
        ordering = ['changed_at', 'id']

    def __str__(self):
        return f"{self.order_id} -> {self.status} by {self.changed_by}"


class ProcessedWebhookEvent(models.Model):
    """Gateway event ids already handled, for at-least-once deliveries."""

    class Provider(models.TextChoices):
        RAZORPAY = 'razorpay', 'Razorpay'

    provider = models.CharField(max_length=20, choices=Provider.choices)
    event_id = models.CharField(max_length=100)
    event_type = models.CharField(max_length=64, blank=True, default='')
    order = models.ForeignKey(
        Order,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='webhook_events'
    )
    outcome = models.CharField(max_length=20)
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Processed Webhook Event'
        verbose_name_plural = 'Processed Webhook Events'
        ordering = ['-received_at']
        constraints = [
            models.UniqueConstraint(
                fields=['provider', 'event_id'],
                name='unique_provider_event'
            )
        ]

    def __str__(self):
        return f"{self.provider}:{self.event_id} ({self.outcome})"
