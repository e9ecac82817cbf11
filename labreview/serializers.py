"""
Request / response serializers。

输入：DRF Serializer 只做字段级校验（类型、必填），业务规则在 services.py。
输出：ORM 对象 / service dataclass → JSON-able dict。
"""

from rest_framework import serializers


# ── 输入 ───────────────────────────────────────────────────────────────────

class IngestRequestSerializer(serializers.Serializer):
    test_order_id = serializers.UUIDField()
    test_type = serializers.CharField(max_length=50)


class ConfirmRequestSerializer(serializers.Serializer):
    confirmed_by_user_id = serializers.IntegerField()
    result_ids = serializers.ListField(
        child=serializers.IntegerField(), required=False, allow_empty=False,
    )


# ── 输出 ───────────────────────────────────────────────────────────────────

def _isoformat(value):
    return value.isoformat() if value else None


def serialize_ingestion_result(result):
    return {
        'success': result.success,
        'message': result.message,
        'message_id': result.message_id,
        'created_count': result.created_count,
        'processed_at': _isoformat(result.processed_at),
        'duplicate': result.duplicate,
    }


def serialize_test_result(result):
    return {
        'id': result.id,
        'test_code': result.test_code,
        'parameter': result.parameter,
        'value_numeric': result.value_numeric,
        'value_text': result.value_text,
        'unit': result.unit,
        'reference_range': result.reference_range,
        'instrument': result.instrument,
        'performed_date': _isoformat(result.performed_date),
        'flag': result.flag,
        'result_status': result.result_status,
        'reviewed_by_ai': result.reviewed_by_ai,
        'ai_reviewed_date': _isoformat(result.ai_reviewed_date),
        'is_confirmed': result.is_confirmed,
        'confirmed_by_user_id': result.confirmed_by_user_id,
        'confirmed_date': _isoformat(result.confirmed_date),
    }


def serialize_test_order(order):
    return {
        'test_order_id': str(order.id),
        'order_code': order.order_code,
        'test_type': order.test_type,
        'status': order.status,
        'ai_review_enabled': order.is_ai_review_enabled,
        'ai_reviewed_at': _isoformat(order.ai_reviewed_at),
        'completed_at': _isoformat(order.completed_at),
        'updated_at': _isoformat(order.updated_at),
    }


def serialize_order_results(order, results):
    response = serialize_test_order(order)
    response['count'] = len(results)
    response['results'] = [serialize_test_result(r) for r in results]
    return response


def serialize_ai_review_mode(order_id, enabled):
    return {
        'test_order_id': str(order_id),
        'ai_review_enabled': enabled,
    }


def serialize_ai_review_outcome(outcome):
    """verdict 只出现在这次响应里，不落库。"""
    response = serialize_order_results(outcome.order, outcome.results)
    response['predicted_status'] = outcome.verdict.predicted_status
    response['ai_summary'] = outcome.verdict.ai_summary
    return response


def serialize_confirmation_outcome(outcome):
    response = serialize_test_order(outcome.order)
    response['completed'] = outcome.completed
    response['confirmed_count'] = len(outcome.confirmed)
    response['confirmed'] = [serialize_test_result(r) for r in outcome.confirmed]
    return response


def serialize_flagging_config(config):
    return {
        'id': config.id,
        'test_code': config.test_code,
        'parameter_name': config.parameter_name,
        'description': config.description,
        'unit': config.unit,
        'gender': config.gender,
        'min': config.min,
        'max': config.max,
        'version': config.version,
        'is_active': config.is_active,
        'effective_date': _isoformat(config.effective_date),
    }


def serialize_flagging_configs(configs):
    return {
        'count': len(configs),
        'configs': [serialize_flagging_config(c) for c in configs],
    }


def serialize_sync_result(sync):
    return {
        'created': sync.created,
        'updated': sync.updated,
        'recalculated': sync.recalculated,
    }
