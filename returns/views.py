"""
Return API Views.

Implements:
- GET /returns/ - Caller's returns (staff: all)
- POST /returns/ - Request a return for a paid or delivered order
- PATCH /returns/{id}/status/ - Review a return (staff)
"""
import logging

from rest_framework import generics, status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import OrderFlowError, error_response
from core.rate_limiting import RateLimitMixin
from .serializers import ReturnCreateSerializer, ReturnRequestSerializer, ReturnStatusSerializer
from .services import create_return, get_user_returns, update_return_status

logger = logging.getLogger(__name__)


class ReturnListCreateView(RateLimitMixin, generics.ListCreateAPIView):
    rate_limit_max_requests = 10
    rate_limit_window_seconds = 60

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return ReturnCreateSerializer
        return ReturnRequestSerializer

    def get_queryset(self):
        return get_user_returns(self.request.user)

    def create(self, request, *args, **kwargs):
        serializer = ReturnCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            return_request = create_return(
                request.user,
                data['order_id'],
                data['reason'],
                [dict(item) for item in data.get('items', [])],
            )
        except OrderFlowError as e:
            logger.warning(f"Return request failed for order {data['order_id']}: {e}")
            return error_response(e)

        return Response(ReturnRequestSerializer(return_request).data, status=status.HTTP_201_CREATED)


class ReturnStatusView(APIView):
    permission_classes = [IsAdminUser]

    def patch(self, request, pk):
        serializer = ReturnStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            return_request = update_return_status(
                request.user,
                pk,
                serializer.validated_data['status'],
                admin_notes=serializer.validated_data.get('admin_notes'),
            )
        except OrderFlowError as e:
            return error_response(e)
        return Response(ReturnRequestSerializer(return_request).data)
