"""
URL routing for order, webhook and pipeline API endpoints.
"""
from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    path('orders/', views.OrderListCreateView.as_view(), name='order-list'),
    path('orders/<uuid:pk>/', views.OrderDetailView.as_view(), name='order-detail'),
    path('orders/<uuid:pk>/history/', views.OrderHistoryView.as_view(), name='order-history'),
    path('orders/<uuid:pk>/summary/', views.OrderSummaryView.as_view(), name='order-summary'),

    path('webhooks/razorpay/', views.RazorpayWebhookView.as_view(), name='razorpay-webhook'),
    path(
        'webhooks/delivery-updates/',
        views.DeliveryUpdateWebhookView.as_view(),
        name='delivery-updates-webhook'
    ),

    path('pipeline/', views.PipelineQueueView.as_view(), name='pipeline-queue'),
    path('pipeline/counts/', views.PipelineCountsView.as_view(), name='pipeline-counts'),
    path('pipeline/bulk-advance/', views.PipelineBulkAdvanceView.as_view(), name='pipeline-bulk-advance'),
    path('pipeline/<uuid:pk>/advance/', views.PipelineAdvanceView.as_view(), name='pipeline-advance'),
    path('pipeline/<uuid:pk>/materials/', views.PipelineMaterialsView.as_view(), name='pipeline-materials'),
    path('pipeline/<uuid:pk>/schedule/', views.PipelineScheduleView.as_view(), name='pipeline-schedule'),
    path('pipeline/<uuid:pk>/ship/', views.PipelineShipView.as_view(), name='pipeline-ship'),
]
