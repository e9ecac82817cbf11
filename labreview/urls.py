from django.urls import path
from .views import (
    AiReviewConfirmView,
    AiReviewModeView,
    AiReviewTriggerView,
    FlaggingConfigListView,
    FlaggingConfigSyncView,
    IngestAsyncView,
    IngestView,
    TestOrderResultsView,
)

urlpatterns = [
    path('test-results/ingest/', IngestView.as_view(), name='test-results-ingest'),
    path('test-results/ingest/async/', IngestAsyncView.as_view(), name='test-results-ingest-async'),
    path('test-orders/<uuid:order_id>/results/', TestOrderResultsView.as_view(), name='test-order-results'),
    path('ai-review/<uuid:order_id>/', AiReviewModeView.as_view(), name='ai-review-mode'),
    path('ai-review/<uuid:order_id>/trigger/', AiReviewTriggerView.as_view(), name='ai-review-trigger'),
    path('ai-review/<uuid:order_id>/confirm/', AiReviewConfirmView.as_view(), name='ai-review-confirm'),
    path('flagging-configs/', FlaggingConfigListView.as_view(), name='flagging-config-list'),
    path('flagging-configs/sync/', FlaggingConfigSyncView.as_view(), name='flagging-config-sync'),
]
