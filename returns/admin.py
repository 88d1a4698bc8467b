"""
Django Admin configuration for return models.
"""
from django.contrib import admin
from .models import ReturnItem, ReturnRequest


class ReturnItemInline(admin.TabularInline):
    model = ReturnItem
    extra = 0
    readonly_fields = ['order_item', 'quantity', 'reason']
    can_delete = False


@admin.register(ReturnRequest)
class ReturnRequestAdmin(admin.ModelAdmin):
    list_display = ['id', 'order', 'user', 'status', 'refund_amount', 'created_at']
    list_filter = ['status', 'created_at']
    search_fields = ['id', 'order__id', 'user__username', 'refund_reference']
    ordering = ['-created_at']
    raw_id_fields = ['order', 'user']
    # Status moves through the returns API so the order is kept in step
    readonly_fields = ['status', 'refund_amount', 'refund_reference', 'created_at', 'updated_at']
    inlines = [ReturnItemInline]
