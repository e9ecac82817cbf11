"""
Audit sink — EventLog 表。

fire-and-forget：写审计失败只记日志，不影响业务操作本身。
在事务里调用时用 record_event_on_commit()，等业务事务提交后再写，
这样回滚的操作不会留下审计记录，审计写失败也不会污染业务事务。
"""

import logging
from functools import partial

from django.db import DatabaseError, transaction
from django.utils import timezone

from .models import EventLog

logger = logging.getLogger(__name__)

SYSTEM_OPERATOR = 'System'

EVENT_INGEST = 'E_00010'
EVENT_AI_REVIEW = 'E_00011'
EVENT_AI_CONFIRM = 'E_00012'
EVENT_AI_MODE = 'E_00013'


def record_event(event_id, action, message, operator, entity_type, entity_id, created_on=None):
    try:
        return EventLog.objects.create(
            event_id=event_id,
            action=action,
            message=message,
            operator_name=operator,
            entity_type=entity_type,
            entity_id=entity_id,
            created_on=created_on or timezone.now(),
        )
    except DatabaseError:
        logger.exception("[Audit] failed to write event %s for %s %s", event_id, entity_type, entity_id)
        return None


def record_event_on_commit(*args, **kwargs):
    transaction.on_commit(partial(record_event, *args, **kwargs))
