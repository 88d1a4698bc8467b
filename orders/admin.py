"""
Django Admin configuration for order models.

Statuses are read-only here: they only change through webhooks, the pipeline
API and the returns workflow, which keep the history ledger in step.
"""
from django.contrib import admin
from .models import Order, OrderItem, OrderStatusHistory, ProcessedWebhookEvent


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['product_ref', 'quantity', 'price_at_purchase', 'subtotal']
    can_delete = False

    def subtotal(self, obj):
        return obj.subtotal
    subtotal.short_description = 'Subtotal'


class OrderStatusHistoryInline(admin.TabularInline):
    model = OrderStatusHistory
    extra = 0
    readonly_fields = ['status', 'changed_by', 'notes', 'changed_at']
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = [
        'short_id', 'user', 'status', 'production_status',
        'total_amount', 'target_ship_date', 'created_at'
    ]
    list_filter = ['status', 'production_status', 'materials_available', 'created_at']
    search_fields = ['id', 'user__username', 'user__email', 'razorpay_order_id', 'razorpay_payment_id']
    ordering = ['-created_at']
    readonly_fields = [
        'status', 'production_status', 'total_amount', 'razorpay_order_id',
        'razorpay_payment_id', 'last_payment_event_at', 'shipping_info',
        'last_carrier_event_at', 'start_date', 'created_at', 'updated_at'
    ]
    inlines = [OrderItemInline, OrderStatusHistoryInline]


@admin.register(OrderStatusHistory)
class OrderStatusHistoryAdmin(admin.ModelAdmin):
    list_display = ['order', 'status', 'changed_by', 'changed_at']
    list_filter = ['status', 'changed_at']
    search_fields = ['order__id', 'changed_by']
    raw_id_fields = ['order']

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(ProcessedWebhookEvent)
class ProcessedWebhookEventAdmin(admin.ModelAdmin):
    list_display = ['provider', 'event_id', 'event_type', 'outcome', 'order', 'received_at']
    list_filter = ['provider', 'event_type', 'outcome']
    search_fields = ['event_id', 'order__id']
    raw_id_fields = ['order']
