"""
Message Dedup Ledger。

message_id 上有唯一约束。try_register() 在 savepoint 里插入一条 provisional 记录：
  - 插入成功 → 这次投递是新的（winner）
  - IntegrityError → 别人已经登记过（loser），调用方去读已有记录

调用方（ingest）把 register → 写结果 → finalize 放在同一个事务里，
所以对外永远看不到「provisional 但没有结果行」的记录；事务回滚时 ledger 也一起回滚。
并发的 loser 会在唯一索引上等 winner 提交，然后拿到 IntegrityError。
"""

import logging
from datetime import timezone as dt_timezone

from django.db import IntegrityError, transaction
from django.utils import timezone

from .models import ProcessedMessage

logger = logging.getLogger(__name__)


def build_message_id(order_id, performed_date):
    """
    同一次仪器运行（order + performed_date）的重复投递落到同一个 id。
    时间先统一到 UTC，同一时刻换个时区偏移也算同一条消息；naive 时间按 UTC 处理。
    """
    if timezone.is_naive(performed_date):
        performed_date = timezone.make_aware(performed_date, dt_timezone.utc)
    performed_date = performed_date.astimezone(dt_timezone.utc)
    return f"{order_id}_{performed_date:%Y%m%d%H%M%S}"


def try_register(message_id, source_system, order_id):
    try:
        with transaction.atomic():
            ProcessedMessage.objects.create(
                message_id=message_id,
                source_system=source_system,
                test_order_id=order_id,
                state=ProcessedMessage.STATE_PROVISIONAL,
                processed_at=timezone.now(),
                created_count=0,
            )
    except IntegrityError:
        logger.info("[Ledger] message_id=%s already registered", message_id)
        return False

    logger.info("[Ledger] registered message_id=%s source=%s", message_id, source_system)
    return True


def get_by_message_id(message_id):
    return ProcessedMessage.objects.filter(message_id=message_id).first()


def finalize(message_id, created_count, processed_at):
    record = ProcessedMessage.objects.select_for_update().get(message_id=message_id)
    record.created_count = created_count
    record.processed_at = processed_at
    record.state = ProcessedMessage.STATE_FINALIZED
    record.save(update_fields=['created_count', 'processed_at', 'state'])
    return record
