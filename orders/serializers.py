"""
Serializers for order models and the pipeline API.
"""
from rest_framework import serializers

from .models import Order, OrderItem, OrderStatusHistory
from .pipeline import compute_sla


class OrderItemSerializer(serializers.ModelSerializer):
    product_id = serializers.CharField(source='product_ref', read_only=True)
    subtotal = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        read_only=True
    )

    class Meta:
        model = OrderItem
        fields = ['id', 'product_id', 'quantity', 'price_at_purchase', 'subtotal']


class OrderItemCreateSerializer(serializers.Serializer):
    """Line item in an order creation request."""
    product_id = serializers.CharField(max_length=64)
    quantity = serializers.IntegerField(min_value=1)
    price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)


class OrderSerializer(serializers.ModelSerializer):
    """Full order detail with nested items."""
    items = OrderItemSerializer(many=True, read_only=True)
    item_count = serializers.SerializerMethodField()
    is_paid = serializers.BooleanField(read_only=True)

    class Meta:
        model = Order
        fields = [
            'id', 'status', 'production_status', 'total_amount', 'currency',
            'shipping_address', 'billing_address', 'tax_breakdown',
            'razorpay_order_id', 'razorpay_payment_id', 'shipping_info',
            'items', 'item_count', 'is_paid',
            'created_at', 'updated_at'
        ]

    def get_item_count(self, obj):
        return len(obj.items.all())


class OrderListSerializer(serializers.ModelSerializer):
    """
    Compact serializer for listing orders.
    Relies on prefetched items for the count.
    """
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'status', 'production_status', 'total_amount',
            'currency', 'item_count', 'created_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class OrderCreateSerializer(serializers.Serializer):
    """
    Serializer for creating orders via POST /orders/

    Request format:
    {
        "total_amount": "11800.00",
        "shipping_address": {"line1": "...", "city": "...", "pincode": "..."},
        "billing_address": {...},
        "items": [
            {"product_id": "SKU-1", "quantity": 2, "price": "5900.00"}
        ],
        "razorpay_order_id": "order_XXXX",
        "tax_breakdown": {"cgst": "900.00", "sgst": "900.00"}
    }
    """
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    shipping_address = serializers.DictField()
    billing_address = serializers.DictField(required=False, default=dict)
    items = OrderItemCreateSerializer(many=True)
    razorpay_order_id = serializers.CharField(max_length=64, required=False, default='', allow_blank=True)
    payment_id = serializers.CharField(max_length=64, required=False, default='', allow_blank=True)
    tax_breakdown = serializers.DictField(required=False, allow_null=True, default=None)

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required")
        return value


class OrderStatusHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusHistory
        fields = ['status', 'changed_by', 'notes', 'changed_at']


class PipelineOrderSerializer(serializers.ModelSerializer):
    """Order as shown on the seller's production board, with its SLA band."""
    customer = serializers.CharField(source='user.username', read_only=True)
    items = OrderItemSerializer(many=True, read_only=True)
    sla = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'short_id', 'customer', 'status', 'production_status',
            'total_amount', 'start_date', 'target_ship_date',
            'materials_available', 'production_notes', 'shipping_info',
            'items', 'sla', 'created_at'
        ]

    def get_sla(self, obj):
        info = compute_sla(obj.target_ship_date, obj.start_date, self.context.get('now'))
        return {
            'band': info.band,
            'hours_remaining': info.hours_remaining,
            'percent_elapsed': info.percent_elapsed,
        }


class AdvanceSerializer(serializers.Serializer):
    target_status = serializers.ChoiceField(choices=Order.ProductionStatus.choices)


class BulkAdvanceSerializer(serializers.Serializer):
    order_ids = serializers.ListField(child=serializers.UUIDField(), allow_empty=False)
    target_status = serializers.ChoiceField(choices=Order.ProductionStatus.choices)


class MaterialsSerializer(serializers.Serializer):
    available = serializers.BooleanField()


class ScheduleSerializer(serializers.Serializer):
    target_ship_date = serializers.DateTimeField(required=False, allow_null=True)
    production_notes = serializers.CharField(required=False, allow_blank=True)


class ShipmentSerializer(serializers.Serializer):
    courier_name = serializers.CharField(max_length=100)
    awb_code = serializers.CharField(max_length=64)
    shipment_id = serializers.CharField(max_length=64, required=False, allow_blank=True)
    label_url = serializers.URLField(required=False, allow_blank=True)
    tracking_url = serializers.URLField(required=False, allow_blank=True)
    provider = serializers.CharField(max_length=32, required=False, default='SHIPROCKET')
