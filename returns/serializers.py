"""
Serializers for return requests.
"""
from rest_framework import serializers

from .models import ReturnItem, ReturnRequest


class ReturnItemSerializer(serializers.ModelSerializer):
    product_id = serializers.CharField(source='order_item.product_ref', read_only=True)

    class Meta:
        model = ReturnItem
        fields = ['id', 'order_item', 'product_id', 'quantity', 'reason']


class ReturnRequestSerializer(serializers.ModelSerializer):
    items = ReturnItemSerializer(many=True, read_only=True)
    order_status = serializers.CharField(source='order.status', read_only=True)

    class Meta:
        model = ReturnRequest
        fields = [
            'id', 'order', 'order_status', 'reason', 'refund_amount', 'status',
            'admin_notes', 'refund_reference', 'items', 'created_at', 'updated_at'
        ]


class ReturnItemCreateSerializer(serializers.Serializer):
    order_item_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1, required=False)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True)


class ReturnCreateSerializer(serializers.Serializer):
    """
    Request format:
    {
        "order_id": "<uuid>",
        "reason": "Wrong size",
        "items": [{"order_item_id": 12, "quantity": 1}]
    }

    Omitting ``items`` returns the whole order.
    """
    order_id = serializers.UUIDField()
    reason = serializers.CharField(max_length=2000)
    items = ReturnItemCreateSerializer(many=True, required=False)


class ReturnStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=ReturnRequest.Status.choices)
    admin_notes = serializers.CharField(required=False, allow_blank=True)
