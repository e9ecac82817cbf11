import logging
import uuid

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import Q
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from . import ledger
from .ai.factory import get_ai_reviewer
from .ai.types import AiReviewRequest, ReviewItem
from .audit import (
    EVENT_AI_CONFIRM,
    EVENT_AI_MODE,
    EVENT_AI_REVIEW,
    EVENT_INGEST,
    SYSTEM_OPERATOR,
    record_event_on_commit,
)
from .exceptions import (
    NotFoundError,
    PersistenceFailure,
    PreconditionFailed,
    UpstreamFailure,
    ValidationError,
)
from .flagging import flag_from_snapshot, load_config_snapshot, resolve_result_status
from .gateway.factory import get_result_gateway
from .models import (
    FlaggingConfig,
    OrderStatus,
    ProcessedMessage,
    RawBackup,
    TestOrder,
    TestResult,
)
from .status import ensure_transition
from .types import AiReviewOutcome, ConfirmationOutcome, IngestionResult, SyncResult

logger = logging.getLogger(__name__)

ENTITY_TEST_ORDER = 'TestOrder'


def _as_uuid(order_id):
    if isinstance(order_id, uuid.UUID):
        return order_id
    try:
        return uuid.UUID(str(order_id))
    except (TypeError, ValueError):
        raise ValidationError(
            message=f"'{order_id}' is not a valid test order id.",
            code='INVALID_TEST_ORDER_ID',
            detail={'test_order_id': str(order_id)},
        )


def get_test_order(order_id, for_update=False):
    """
    取 order。不存在或已软删除 → NotFoundError。
    for_update=True 时加行锁，必须在 transaction.atomic() 里调用。
    """
    order_uuid = _as_uuid(order_id)
    queryset = TestOrder.objects.select_for_update() if for_update else TestOrder.objects.all()
    try:
        order = queryset.get(id=order_uuid)
    except TestOrder.DoesNotExist:
        order = None

    if order is None or order.is_deleted:
        raise NotFoundError(
            message='Test order not found',
            detail={'test_order_id': str(order_uuid)},
        )
    return order


# ── Ingestion ──────────────────────────────────────────────────────────────

def _build_result(order, message_id, batch, item, snapshot, gender, processed_at):
    flag = flag_from_snapshot(snapshot, item.test_code, item.value_numeric, gender)
    return TestResult(
        test_order=order,
        message_id=message_id,
        test_code=item.test_code,
        parameter=item.parameter,
        value_numeric=item.value_numeric,
        value_text=item.value_text,
        unit=item.unit,
        reference_range=item.reference_range,
        instrument=batch.instrument,
        performed_date=batch.performed_date,
        flag=flag,
        flagged_at=processed_at,
        result_status=resolve_result_status(flag, item.status),
        reviewed_by_ai=False,
        is_confirmed=False,
    )


def _replay(record):
    """重复投递：原样返回上次的处理结果，不做任何写入。"""
    if record.state != ProcessedMessage.STATE_FINALIZED:
        # 另一个投递还没提交，稍后重投递会读到 finalized 记录
        raise PersistenceFailure(
            message=f"Message {record.message_id} is still being processed.",
            code='MESSAGE_IN_PROGRESS',
            detail={'message_id': record.message_id},
        )
    return IngestionResult(
        success=True,
        message='Message already processed.',
        message_id=record.message_id,
        created_count=record.created_count,
        processed_at=record.processed_at,
        duplicate=True,
    )


def ingest_test_results(order_id, test_type, gateway=None):
    """
    拉取一次仪器运行的结果并落库。

    1. gateway 拉原始结果（失败直接抛 UpstreamFailure，ledger 不会留下任何记录）
    2. 由 order_id + performed_date 生成 message_id
    3. ledger 登记；已存在 → 返回上次结果（duplicate=True）
    4. 加载 order（不存在 / 已删除 → NotFoundError）
    5. 逐条计算 flag
    6. 批量写入 TestResult
    7. ledger finalize
    8. 事务提交后写审计

    3 ~ 7 在同一个事务里：任何一步失败整体回滚，ledger 也不会留下 provisional 记录。
    """
    order_uuid = _as_uuid(order_id)
    gateway = gateway or get_result_gateway()
    source_system = settings.INGEST_SOURCE_SYSTEM

    logger.info("[Ingest] start order_id=%s test_type=%s", order_uuid, test_type)

    try:
        batch = gateway.fetch_raw_results(order_uuid, test_type)
    except UpstreamFailure as exc:
        logger.error(
            "[Ingest] gateway failed order_id=%s code=%s: %s",
            order_uuid, exc.code, exc.message,
        )
        raise

    message_id = ledger.build_message_id(order_uuid, batch.performed_date)

    try:
        with transaction.atomic():
            if not ledger.try_register(message_id, source_system, order_uuid):
                result = _replay(ledger.get_by_message_id(message_id))
                logger.info(
                    "[Ingest] duplicate message_id=%s order_id=%s, skipped",
                    message_id, order_uuid,
                )
                return result

            order = get_test_order(order_uuid)
            gender = order.patient.gender
            processed_at = timezone.now()
            snapshot = load_config_snapshot(item.test_code for item in batch.items)

            results = [
                _build_result(order, message_id, batch, item, snapshot, gender, processed_at)
                for item in batch.items
            ]
            created = TestResult.objects.bulk_create(results)

            ledger.finalize(message_id, len(created), processed_at)

            record_event_on_commit(
                EVENT_INGEST,
                'Process Test Result Message',
                f"Processed {len(created)} test results for message {message_id}.",
                SYSTEM_OPERATOR,
                ENTITY_TEST_ORDER,
                order.id,
            )
    except DatabaseError as exc:
        logger.exception(
            "[Ingest] persistence failed order_id=%s message_id=%s",
            order_uuid, message_id,
        )
        raise PersistenceFailure(
            message='Failed to persist test results.',
            detail={'test_order_id': str(order_uuid), 'message_id': message_id},
        ) from exc

    logger.info(
        "[Ingest] done order_id=%s message_id=%s created=%d",
        order_uuid, message_id, len(created),
    )
    return IngestionResult(
        success=True,
        message=f"Created {len(created)} test results.",
        message_id=message_id,
        created_count=len(created),
        processed_at=processed_at,
    )


def save_raw_backup(raw_content):
    """队列消息先原样落库，处理失败也能追查。"""
    return RawBackup.objects.create(raw_content=raw_content)


def get_test_results(order_id):
    order = get_test_order(order_id)
    return order, list(order.results.all())


# ── AI review mode ─────────────────────────────────────────────────────────

def get_ai_review_mode(order_id):
    return get_test_order(order_id).is_ai_review_enabled


def set_ai_review_mode(order_id, enable):
    enable = bool(enable)
    with transaction.atomic():
        order = get_test_order(order_id, for_update=True)
        order.is_ai_review_enabled = enable
        order.save(update_fields=['is_ai_review_enabled', 'updated_at'])
        record_event_on_commit(
            EVENT_AI_MODE,
            'Set AI Review Mode',
            f"AI review {'enabled' if enable else 'disabled'}.",
            SYSTEM_OPERATOR,
            ENTITY_TEST_ORDER,
            order.id,
        )

    logger.info("[AIReview] order_id=%s ai_review_enabled=%s", order.id, enable)
    return order


# ── AI review ──────────────────────────────────────────────────────────────

def _ensure_ai_review_enabled(order):
    if not order.is_ai_review_enabled:
        raise PreconditionFailed(
            message='AI review is not enabled for this test order.',
            code='AI_REVIEW_DISABLED',
            detail={'test_order_id': str(order.id)},
        )


def build_review_request(order, results):
    return AiReviewRequest(
        test_order_id=str(order.id),
        results=[
            ReviewItem(
                name=r.parameter,
                value=r.value_numeric if r.value_numeric is not None else 0,
                unit=r.unit,
            )
            for r in results
        ],
    )


def apply_verdict(results, verdict, reviewed_at):
    """
    同一个 verdict 写到 order 的每一条 result 上。

    打分服务只给整单一个结论，没有逐条的判定。
    """
    for result in results:
        result.result_status = verdict.predicted_status
        result.reviewed_by_ai = True
        result.ai_reviewed_date = reviewed_at
        result.updated_at = reviewed_at
    TestResult.objects.bulk_update(
        results, ['result_status', 'reviewed_by_ai', 'ai_reviewed_date', 'updated_at'],
    )
    return results


def trigger_ai_review(order_id, reviewer=None):
    """
    对 order 的所有结果做一次 AI review。

    前置条件检查都在外部调用之前，任何一条不满足都不会发出请求。
    外部调用不持有行锁；拿到 verdict 后在事务里加锁、重新检查，再落库。
    """
    order = get_test_order(order_id)
    _ensure_ai_review_enabled(order)
    ensure_transition(order, OrderStatus.REVIEWED_BY_AI)

    results = list(order.results.all())
    if not results:
        raise PreconditionFailed(
            message='Test order has no results to review.',
            code='NO_RESULTS',
            detail={'test_order_id': str(order.id)},
        )

    reviewer = reviewer or get_ai_reviewer()
    logger.info("[AIReview] requesting review order_id=%s results=%d", order.id, len(results))
    try:
        verdict = reviewer.review(build_review_request(order, results))
    except UpstreamFailure as exc:
        logger.error(
            "[AIReview] reviewer failed order_id=%s code=%s: %s",
            order.id, exc.code, exc.message,
        )
        raise

    try:
        with transaction.atomic():
            order = get_test_order(order.id, for_update=True)
            # 等 AI 返回期间状态可能已被别的请求改掉
            _ensure_ai_review_enabled(order)
            ensure_transition(order, OrderStatus.REVIEWED_BY_AI)

            reviewed_at = timezone.now()
            results = apply_verdict(list(order.results.all()), verdict, reviewed_at)

            order.status = OrderStatus.REVIEWED_BY_AI
            order.ai_reviewed_at = reviewed_at
            order.save(update_fields=['status', 'ai_reviewed_at', 'updated_at'])

            record_event_on_commit(
                EVENT_AI_REVIEW,
                'AI Review Test Results',
                f"AI reviewed {len(results)} results, predicted status '{verdict.predicted_status}'.",
                SYSTEM_OPERATOR,
                ENTITY_TEST_ORDER,
                order.id,
            )
    except DatabaseError as exc:
        logger.exception("[AIReview] persistence failed order_id=%s", order.id)
        raise PersistenceFailure(
            message='Failed to save AI review results.',
            detail={'test_order_id': str(order.id)},
        ) from exc

    logger.info(
        "[AIReview] done order_id=%s predicted_status=%s",
        order.id, verdict.predicted_status,
    )
    return AiReviewOutcome(order=order, results=results, verdict=verdict)


# ── Confirmation ───────────────────────────────────────────────────────────

def confirm_ai_review_results(order_id, confirmed_by_user_id, result_ids=None):
    """
    人工确认 AI review 过的结果。

    result_ids 为空时确认全部未确认的 AI review 结果，否则只确认其中指定的那些。
    确认后 order 下所有 AI review 过的结果都已确认 → order 进入 completed。

    整个调用持有 order 的行锁，两个并发确认会串行执行，
    completed 的判断基于同一份快照。
    """
    if confirmed_by_user_id is None:
        raise ValidationError(
            message='confirmed_by_user_id is required.',
            code='MISSING_CONFIRMED_BY',
        )

    try:
        with transaction.atomic():
            order = get_test_order(order_id, for_update=True)

            if order.status != OrderStatus.REVIEWED_BY_AI:
                raise PreconditionFailed(
                    message='Test order has not been reviewed by AI. Cannot confirm.',
                    code='NOT_REVIEWED_BY_AI',
                    detail={'test_order_id': str(order.id), 'current_status': order.status},
                )

            results = list(order.results.all())
            if not results:
                raise PreconditionFailed(
                    message='Test order has no results to confirm.',
                    code='NO_RESULTS',
                    detail={'test_order_id': str(order.id)},
                )

            pending = [r for r in results if r.reviewed_by_ai and not r.is_confirmed]
            if result_ids is not None:
                try:
                    wanted = {int(i) for i in result_ids}
                except (TypeError, ValueError):
                    raise ValidationError(
                        message='result_ids must be a list of integer result ids.',
                        code='INVALID_RESULT_IDS',
                        detail={'result_ids': repr(result_ids)},
                    )
                pending = [r for r in pending if r.id in wanted]
            if not pending:
                raise PreconditionFailed(
                    message=(
                        'No AI-reviewed results found to confirm, '
                        'or all results have already been confirmed.'
                    ),
                    code='NOTHING_TO_CONFIRM',
                    detail={'test_order_id': str(order.id)},
                )

            now = timezone.now()
            for result in pending:
                result.is_confirmed = True
                result.confirmed_by_user_id = confirmed_by_user_id
                result.confirmed_date = now
                result.updated_at = now
            TestResult.objects.bulk_update(
                pending, ['is_confirmed', 'confirmed_by_user_id', 'confirmed_date', 'updated_at'],
            )

            # 重新扫描：所有 AI review 过的结果都确认了才算完成
            reviewed = order.results.filter(reviewed_by_ai=True)
            completed = reviewed.exists() and not reviewed.filter(is_confirmed=False).exists()
            if completed:
                ensure_transition(order, OrderStatus.COMPLETED)
                order.status = OrderStatus.COMPLETED
                order.completed_at = now
                order.save(update_fields=['status', 'completed_at', 'updated_at'])

            record_event_on_commit(
                EVENT_AI_CONFIRM,
                'Confirm AI Review Results',
                f"Confirmed {len(pending)} results"
                f"{', test order completed' if completed else ''}.",
                str(confirmed_by_user_id),
                ENTITY_TEST_ORDER,
                order.id,
            )
    except DatabaseError as exc:
        logger.exception("[Confirm] persistence failed order_id=%s", order_id)
        raise PersistenceFailure(
            message='Failed to confirm AI review results.',
            detail={'test_order_id': str(order_id)},
        ) from exc

    logger.info(
        "[Confirm] order_id=%s confirmed=%d completed=%s by user=%s",
        order.id, len(pending), completed, confirmed_by_user_id,
    )
    return ConfirmationOutcome(order=order, confirmed=pending, completed=completed)


# ── Flagging configs ───────────────────────────────────────────────────────

CONFIG_FIELDS = ('parameter_name', 'description', 'unit', 'min', 'max', 'is_active', 'effective_date')
REQUIRED_FOR_CREATE = ('parameter_name', 'unit', 'min', 'max')


def _config_key(test_code, gender):
    return (test_code or '').strip().upper(), (gender or '').strip().upper() or None


def _to_float(value, field_name, test_code):
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(
            message=f"'{field_name}' must be a number.",
            code='INVALID_CONFIG',
            detail={'test_code': test_code, 'field': field_name, 'value': value},
        )


def _clean_config_item(item):
    test_code = (item.get('test_code') or '').strip()
    cleaned = {'test_code': test_code, 'gender': (item.get('gender') or '').strip() or None}
    for name in ('parameter_name', 'description', 'unit'):
        if item.get(name) is not None:
            cleaned[name] = str(item[name]).strip()
    for name in ('min', 'max'):
        value = _to_float(item.get(name), name, test_code)
        if value is not None:
            cleaned[name] = value
    if item.get('is_active') is not None:
        cleaned['is_active'] = bool(item['is_active'])
    if item.get('effective_date'):
        effective_date = item['effective_date']
        if isinstance(effective_date, str):
            effective_date = parse_datetime(effective_date)
        if effective_date is None:
            raise ValidationError(
                message="'effective_date' is not a valid datetime.",
                code='INVALID_CONFIG',
                detail={'test_code': test_code},
            )
        if timezone.is_naive(effective_date):
            effective_date = timezone.make_aware(effective_date)
        cleaned['effective_date'] = effective_date
    return cleaned


def _validate_range(test_code, low, high):
    if low is not None and high is not None and low >= high:
        raise ValidationError(
            message=f"min must be less than max for test_code '{test_code}'.",
            code='INVALID_RANGE',
            detail={'test_code': test_code, 'min': low, 'max': high},
        )


def sync_flagging_configs(items):
    """
    批量 upsert 参考范围配置，按 (test_code, gender) 匹配（不区分大小写）。

    已有行只要有字段变化就 version + 1；新行必须带 parameter_name / unit / min / max。
    写完后对受影响 test_code 的已有结果重新计算 flag（只改 flag，不动 result_status）。
    """
    cleaned = [_clean_config_item(item) for item in items or []]
    cleaned = [c for c in cleaned if c['test_code']]
    if not cleaned:
        raise ValidationError(message='No flagging configs to sync.', code='EMPTY_CONFIG_SYNC')

    codes = {c['test_code'].upper() for c in cleaned}
    code_filter = Q()
    for code in codes:
        code_filter |= Q(test_code__iexact=code)

    sync = SyncResult()
    now = timezone.now()
    with transaction.atomic():
        existing = {
            _config_key(c.test_code, c.gender): c
            for c in FlaggingConfig.objects.select_for_update().filter(code_filter)
        }

        for item in cleaned:
            key = _config_key(item['test_code'], item['gender'])
            config = existing.get(key)

            if config is None:
                missing = [name for name in REQUIRED_FOR_CREATE if name not in item]
                if missing:
                    raise ValidationError(
                        message=f"New flagging config for '{item['test_code']}' is missing fields.",
                        code='INVALID_CONFIG',
                        detail={'test_code': item['test_code'], 'missing': missing},
                    )
                _validate_range(item['test_code'], item['min'], item['max'])
                config = FlaggingConfig.objects.create(
                    test_code=item['test_code'],
                    gender=item['gender'],
                    parameter_name=item['parameter_name'],
                    description=item.get('description', ''),
                    unit=item['unit'],
                    min=item['min'],
                    max=item['max'],
                    is_active=item.get('is_active', True),
                    effective_date=item.get('effective_date', now),
                    version=1,
                )
                existing[key] = config
                sync.created += 1
                continue

            _validate_range(
                item['test_code'], item.get('min', config.min), item.get('max', config.max),
            )
            changed = [
                name for name in CONFIG_FIELDS
                if name in item and getattr(config, name) != item[name]
            ]
            if not changed:
                continue
            for name in changed:
                setattr(config, name, item[name])
            config.version += 1
            config.save(update_fields=changed + ['version', 'updated_at'])
            sync.updated += 1

        if sync.created or sync.updated:
            sync.recalculated = recalculate_flags(code_filter)

    logger.info(
        "[FlaggingConfig] synced created=%d updated=%d recalculated=%d",
        sync.created, sync.updated, sync.recalculated,
    )
    return sync


def recalculate_flags(code_filter):
    """按当前 config 重新计算已有结果的 flag，返回实际改动的条数。"""
    results = list(
        TestResult.objects.filter(code_filter, value_numeric__isnull=False)
        .select_related('test_order__patient')
    )
    if not results:
        return 0

    snapshot = load_config_snapshot(r.test_code for r in results)
    now = timezone.now()
    changed = []
    for result in results:
        flag = flag_from_snapshot(
            snapshot, result.test_code, result.value_numeric, result.test_order.patient.gender,
        )
        if flag != result.flag:
            result.flag = flag
            result.flagged_at = now
            changed.append(result)

    if changed:
        TestResult.objects.bulk_update(changed, ['flag', 'flagged_at'])
    return len(changed)


def list_flagging_configs():
    return list(FlaggingConfig.objects.filter(is_active=True).order_by('test_code', 'gender', '-version'))
