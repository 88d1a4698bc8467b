"""
URL routing for return API endpoints.
"""
from django.urls import path
from . import views

app_name = 'returns'

urlpatterns = [
    path('returns/', views.ReturnListCreateView.as_view(), name='return-list'),
    path('returns/<uuid:pk>/status/', views.ReturnStatusView.as_view(), name='return-status'),
]
