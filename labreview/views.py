"""
HTTP 层只做三件事：解析请求 → 调 service → 序列化响应。

业务异常不在这里处理，统一交给 exception_handler.unified_exception_handler。
"""

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from . import services
from .exceptions import ValidationError
from .serializers import (
    ConfirmRequestSerializer,
    IngestRequestSerializer,
    serialize_ai_review_mode,
    serialize_ai_review_outcome,
    serialize_confirmation_outcome,
    serialize_flagging_configs,
    serialize_ingestion_result,
    serialize_order_results,
    serialize_sync_result,
)

TRUE_VALUES = {'true', '1', 'yes', 'on'}
FALSE_VALUES = {'false', '0', 'no', 'off'}


def _parse_enable(raw):
    value = (raw or '').strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ValidationError(
        message="Query parameter 'enable' must be true or false.",
        code='INVALID_ENABLE_FLAG',
        detail={'enable': raw},
    )


class IngestView(APIView):
    """POST /api/test-results/ingest/ - 同步拉取并落库一次仪器运行的结果"""

    def post(self, request):
        serializer = IngestRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = services.ingest_test_results(
            serializer.validated_data['test_order_id'],
            serializer.validated_data['test_type'],
        )
        return Response(serialize_ingestion_result(result))


class IngestAsyncView(APIView):
    """POST /api/test-results/ingest/async/ - 交给 Celery，立即返回 202"""

    def post(self, request):
        from .tasks import ingest_test_results_task

        serializer = IngestRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order_id = str(serializer.validated_data['test_order_id'])
        test_type = serializer.validated_data['test_type']

        task = ingest_test_results_task.delay(order_id, test_type)
        return Response(
            {
                'test_order_id': order_id,
                'test_type': test_type,
                'task_id': task.id,
                'message': 'Ingestion queued.',
            },
            status=status.HTTP_202_ACCEPTED,
        )


class TestOrderResultsView(APIView):
    """GET /api/test-orders/<id>/results/"""

    def get(self, request, order_id):
        order, results = services.get_test_results(order_id)
        return Response(serialize_order_results(order, results))


class AiReviewModeView(APIView):
    """GET / PUT /api/ai-review/<id>/"""

    def get(self, request, order_id):
        enabled = services.get_ai_review_mode(order_id)
        return Response(serialize_ai_review_mode(order_id, enabled))

    def put(self, request, order_id):
        enable = _parse_enable(request.query_params.get('enable'))
        order = services.set_ai_review_mode(order_id, enable)
        return Response(serialize_ai_review_mode(order.id, order.is_ai_review_enabled))


class AiReviewTriggerView(APIView):
    """POST /api/ai-review/<id>/trigger/"""

    def post(self, request, order_id):
        outcome = services.trigger_ai_review(order_id)
        return Response(serialize_ai_review_outcome(outcome))


class AiReviewConfirmView(APIView):
    """POST /api/ai-review/<id>/confirm/"""

    def post(self, request, order_id):
        serializer = ConfirmRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        outcome = services.confirm_ai_review_results(
            order_id,
            serializer.validated_data['confirmed_by_user_id'],
            result_ids=serializer.validated_data.get('result_ids'),
        )
        return Response(serialize_confirmation_outcome(outcome))


class FlaggingConfigListView(APIView):
    """GET /api/flagging-configs/"""

    def get(self, request):
        return Response(serialize_flagging_configs(services.list_flagging_configs()))


class FlaggingConfigSyncView(APIView):
    """POST /api/flagging-configs/sync/ - body 可以是数组，也可以是 {"configs": [...]}"""

    def post(self, request):
        items = request.data
        if isinstance(items, dict):
            items = items.get('configs')
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise ValidationError(
                message='Request body must be a list of flagging configs.',
                code='INVALID_CONFIG_PAYLOAD',
            )
        sync = services.sync_flagging_configs(items)
        return Response(serialize_sync_result(sync))
