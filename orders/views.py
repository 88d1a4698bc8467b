"""
Order API Views.

Implements:
- GET/POST /orders/ - List the caller's orders / create an order
- GET /orders/{id}/ - Order detail with items
- GET /orders/{id}/history/ - Status ledger
- GET /orders/{id}/summary/ - Cached tracking summary
- POST /webhooks/razorpay/ - Payment gateway events
- GET/POST /webhooks/delivery-updates/ - Carrier tracking updates
- /pipeline/... - Seller production board (staff)
"""
import logging

from django.core.exceptions import ImproperlyConfigured
from django.utils import timezone
from rest_framework import generics, status
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import (
    InvalidSignature,
    OrderFlowError,
    OrderNotResolved,
    error_response,
)
from core.rate_limiting import RateLimitMixin
from . import pipeline
from .models import Order
from .payments import handle_payment_webhook
from .serializers import (
    AdvanceSerializer,
    BulkAdvanceSerializer,
    MaterialsSerializer,
    OrderCreateSerializer,
    OrderListSerializer,
    OrderSerializer,
    OrderStatusHistorySerializer,
    PipelineOrderSerializer,
    ScheduleSerializer,
    ShipmentSerializer,
)
from .services import (
    create_order,
    get_order_for_user,
    get_order_history,
    get_order_summary,
    get_user_orders,
)
from .shipments import handle_shipment_webhook

logger = logging.getLogger(__name__)


def _actor(request) -> str:
    return request.user.get_username() or str(request.user.pk)


class OrderListCreateView(RateLimitMixin, generics.ListCreateAPIView):
    """
    GET: List the caller's orders (staff see every order)
    POST: Create a new order in PENDING_PAYMENT

    Query Parameters (GET):
        - status: Filter by order status
    """
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return OrderCreateSerializer
        return OrderListSerializer

    def get_queryset(self):
        queryset = get_user_orders(self.request.user)

        status_filter = self.request.query_params.get('status', '').upper()
        if status_filter in Order.Status.values:
            queryset = queryset.filter(status=status_filter)

        return queryset

    def create(self, request, *args, **kwargs):
        """
        Create order and items atomically.

        Returns:
            - 201: Order created
            - 400: Validation error
            - 500: Storage failure (nothing persisted)
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            order = create_order(
                request.user,
                total_amount=data['total_amount'],
                shipping_address=data['shipping_address'],
                billing_address=data['billing_address'],
                items=[dict(item) for item in data['items']],
                razorpay_order_id=data['razorpay_order_id'],
                payment_id=data['payment_id'],
                tax_breakdown=data['tax_breakdown'],
            )
        except OrderFlowError as e:
            logger.warning(f"Order creation failed: {e}")
            return error_response(e)

        order = Order.objects.prefetch_related('items').get(pk=order.pk)
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)


class OrderDetailView(APIView):
    """GET: Order detail with items, for its owner or staff."""

    def get(self, request, pk):
        try:
            order = get_order_for_user(request.user, pk)
        except OrderFlowError as e:
            return error_response(e)
        return Response(OrderSerializer(order).data)


class OrderHistoryView(APIView):
    """GET: Every status change of the order, oldest first."""

    def get(self, request, pk):
        try:
            history = get_order_history(request.user, pk)
        except OrderFlowError as e:
            return error_response(e)
        return Response(OrderStatusHistorySerializer(history, many=True).data)


class OrderSummaryView(APIView):
    """GET: Cached tracking summary of one order."""

    def get(self, request, pk):
        try:
            order = get_order_for_user(request.user, pk)
        except OrderFlowError as e:
            return error_response(e)
        return Response(get_order_summary(order.pk))


class RazorpayWebhookView(APIView):
    """
    POST: Razorpay webhook events.

    The signature covers the raw body, so the body is read from
    ``request.body`` and never re-serialized.

    Returns:
        - 200: Processed, duplicate, stale, ignored or unresolved
        - 400: Signature missing/invalid or malformed body
        - 500: Secret not configured or storage failure (gateway retries)
    """
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        try:
            result = handle_payment_webhook(
                request.body,
                request.META.get('HTTP_X_RAZORPAY_SIGNATURE'),
                request.META.get('HTTP_X_RAZORPAY_EVENT_ID', '')
            )
        except ImproperlyConfigured as e:
            logger.error(f"[Payment webhook] {e}")
            return Response(
                {'error': 'Server Error', 'detail': 'Webhook is not configured'},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        except InvalidSignature as e:
            logger.warning(f"[Payment webhook] Rejected delivery: {e}")
            return error_response(e)
        except OrderFlowError as e:
            return error_response(e)

        return Response({'success': True, **result.as_dict()})


class DeliveryUpdateWebhookView(APIView):
    """
    GET: Liveness check used by the carrier when registering the hook
    POST: Carrier tracking update

    Unresolvable orders answer 200 with ``success: false`` so the carrier
    keeps the hook enabled.
    """
    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request):
        return Response({'success': True, 'message': 'Delivery updates webhook is active'})

    def post(self, request):
        try:
            result = handle_shipment_webhook(request.body, request.META.get('HTTP_X_API_KEY'))
        except InvalidSignature as e:
            return error_response(e, status.HTTP_401_UNAUTHORIZED)
        except OrderNotResolved as e:
            logger.warning(f"[Carrier webhook] {e}")
            return Response({'success': False, 'error': e.error, 'detail': e.public_message})
        except OrderFlowError as e:
            return error_response(e)

        return Response({'success': True, **result.as_dict()})


class PipelineQueueView(generics.ListAPIView):
    """
    GET: Orders in a production queue.

    Query Parameters:
        - stage: new, production, qc, ready or critical (default: new)
    """
    serializer_class = PipelineOrderSerializer
    permission_classes = [IsAdminUser]

    def get_serializer_context(self):
        context = super().get_serializer_context()
        context['now'] = timezone.now()
        return context

    def list(self, request, *args, **kwargs):
        try:
            queryset = pipeline.pipeline_queue(request.query_params.get('stage', 'new'))
        except OrderFlowError as e:
            return error_response(e)

        page = self.paginate_queryset(queryset)
        serializer = self.get_serializer(page, many=True)
        return self.get_paginated_response(serializer.data)


class PipelineCountsView(APIView):
    """GET: Number of orders waiting in each queue."""
    permission_classes = [IsAdminUser]

    def get(self, request):
        return Response(pipeline.queue_counts())


class PipelineAdvanceView(APIView):
    """POST: Move one order to its next production stage."""
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        serializer = AdvanceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            order = pipeline.advance_production(
                pk,
                serializer.validated_data['target_status'],
                actor=_actor(request)
            )
        except OrderFlowError as e:
            return error_response(e)
        return Response(PipelineOrderSerializer(order, context={'now': timezone.now()}).data)


class PipelineBulkAdvanceView(APIView):
    """
    POST: Advance many orders; each succeeds or fails on its own.

    Always 200 with a per-order report.
    """
    permission_classes = [IsAdminUser]

    def post(self, request):
        serializer = BulkAdvanceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        results = pipeline.bulk_advance(
            serializer.validated_data['order_ids'],
            serializer.validated_data['target_status'],
            actor=_actor(request)
        )
        return Response({
            'results': results,
            'succeeded': sum(1 for r in results if r['success']),
            'failed': sum(1 for r in results if not r['success']),
        })


class PipelineMaterialsView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        serializer = MaterialsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            order = pipeline.toggle_materials_available(pk, serializer.validated_data['available'])
        except OrderFlowError as e:
            return error_response(e)
        return Response({'id': str(order.pk), 'materials_available': order.materials_available})


class PipelineScheduleView(APIView):
    permission_classes = [IsAdminUser]

    def patch(self, request, pk):
        serializer = ScheduleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            order = pipeline.update_schedule(
                pk,
                target_ship_date=data.get('target_ship_date', pipeline.UNSET),
                production_notes=data.get('production_notes'),
            )
        except OrderFlowError as e:
            return error_response(e)
        return Response(PipelineOrderSerializer(order, context={'now': timezone.now()}).data)


class PipelineShipView(APIView):
    """POST: Record the carrier shipment for a Ready order."""
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        serializer = ShipmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            order = pipeline.ship_order(pk, serializer.validated_data, actor=_actor(request))
        except OrderFlowError as e:
            return error_response(e)
        return Response(PipelineOrderSerializer(order, context={'now': timezone.now()}).data)
