"""
Return Models - customer return requests and the items they cover.

Return status flow:
    requested -> approved | rejected | pickup_scheduled
    pickup_scheduled -> approved | rejected | refund_initiated
    approved -> refund_initiated | pickup_scheduled
    refund_initiated -> refund_completed (gateway refund event only)
"""
import uuid

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q

from orders.models import Order, OrderItem


class ReturnRequest(models.Model):

    class Status(models.TextChoices):
        REQUESTED = 'requested', 'Requested'
        APPROVED = 'approved', 'Approved'
        REJECTED = 'rejected', 'Rejected'
        PICKUP_SCHEDULED = 'pickup_scheduled', 'Pickup Scheduled'
        REFUND_INITIATED = 'refund_initiated', 'Refund Initiated'
        REFUND_COMPLETED = 'refund_completed', 'Refund Completed'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        related_name='returns'
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='returns'
    )
    reason = models.TextField()
    refund_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Snapshot of the order total when the return was requested"
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.REQUESTED,
        db_index=True
    )
    admin_notes = models.TextField(blank=True, default='')
    refund_reference = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Return Request'
        verbose_name_plural = 'Return Requests'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['order'],
                condition=~Q(status__in=['rejected', 'refund_completed']),
                name='unique_active_return_per_order'
            )
        ]

    def __str__(self):
        return f"Return {str(self.id)[:8].upper()} for {self.order_id} ({self.status})"


ACTIVE_RETURN_STATUSES = (
    ReturnRequest.Status.REQUESTED,
    ReturnRequest.Status.APPROVED,
    ReturnRequest.Status.PICKUP_SCHEDULED,
    ReturnRequest.Status.REFUND_INITIATED,
)


class ReturnItem(models.Model):
    return_request = models.ForeignKey(
        ReturnRequest,
        on_delete=models.CASCADE,
        related_name='items'
    )
    order_item = models.ForeignKey(
        OrderItem,
        on_delete=models.PROTECT,
        related_name='return_items'
    )
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    reason = models.CharField(max_length=255, blank=True, default='')

    class Meta:
        verbose_name = 'Return Item'
        verbose_name_plural = 'Return Items'
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.order_item.product_ref}"
