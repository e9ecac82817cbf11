# worker.py
import json
import logging
import os
import time

import django

# 告诉 Django 用哪个 settings
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

# 初始化 Django ORM（这样才能用 models）
django.setup()

import redis
from django.conf import settings
from django.db import DatabaseError

from labreview.exceptions import BaseAppException, ValidationError
from labreview.services import ingest_test_results, save_raw_backup

logger = logging.getLogger('worker')

REDIS_RETRY_DELAY = 5


def get_redis_client():
    return redis.from_url(settings.REDIS_URL)


def decode_message(raw):
    if not isinstance(raw, bytes):
        return raw
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError:
        raise ValidationError(message='Queue message is not valid UTF-8.', code='INVALID_MESSAGE')


def parse_message(raw):
    """队列消息：{"test_order_id": "...", "test_type": "..."}"""
    try:
        data = json.loads(raw)
    except ValueError:
        raise ValidationError(message='Queue message is not valid JSON.', code='INVALID_MESSAGE')

    if not isinstance(data, dict):
        raise ValidationError(message='Queue message must be a JSON object.', code='INVALID_MESSAGE')

    order_id = data.get('test_order_id') or data.get('testOrderId')
    test_type = data.get('test_type') or data.get('testType') or ''
    if not order_id:
        raise ValidationError(
            message='Queue message has no test_order_id.',
            code='INVALID_MESSAGE',
            detail={'message': data},
        )
    return str(order_id), test_type


def handle_message(raw):
    """
    处理一条消息，返回 True 表示可以 ack（从 processing 列表删掉）。

    - 成功 / 重复投递              → ack
    - 不可重试的业务错误（坏消息、order 不存在、…）→ 记日志后 ack，重投递也没用
    - 可重试的错误（超时、数据库） → 不 ack，放回队列等下一次投递
    """
    try:
        text = decode_message(raw)
        save_raw_backup(text)
        order_id, test_type = parse_message(text)
        result = ingest_test_results(order_id, test_type)
    except BaseAppException as exc:
        if exc.retryable:
            logger.warning("[Worker] retryable failure %s: %s, message=%r", exc.code, exc.message, raw)
            return False
        logger.error("[Worker] dropping message %s: %s, message=%r", exc.code, exc.message, raw)
        return True
    except DatabaseError as exc:
        logger.warning("[Worker] database error, message requeued: %s, message=%r", exc, raw)
        return False

    logger.info(
        "[Worker] processed order_id=%s message_id=%s created=%d duplicate=%s",
        order_id, result.message_id, result.created_count, result.duplicate,
    )
    return True


def recover_unacked(r):
    """
    启动时把上次没 ack 的消息（worker 崩溃时还在 processing 列表里的）搬回队列。
    放在队列消费端，下一个就处理它们。
    """
    queue = settings.RAW_RESULT_QUEUE
    processing = settings.RAW_RESULT_PROCESSING_QUEUE
    recovered = 0
    while r.lmove(processing, queue, src='RIGHT', dest='RIGHT') is not None:
        recovered += 1
    if recovered:
        logger.warning("[Worker] recovered %d unacked messages", recovered)
    return recovered


def process_next(r, timeout=0):
    """
    取一条消息处理。返回 None 表示 timeout 内没有消息。

    blmove 把消息原子地从队列搬到 processing 列表，处理完才 lrem，
    worker 中途挂掉消息也不会丢。
    """
    queue = settings.RAW_RESULT_QUEUE
    processing = settings.RAW_RESULT_PROCESSING_QUEUE

    # 生产者 LPUSH，这里从右边取（和 brpop 一样的先进先出）
    raw = r.blmove(queue, processing, timeout, src='RIGHT', dest='LEFT')
    if raw is None:
        return None

    acked = handle_message(raw)
    pipe = r.pipeline()
    pipe.lrem(processing, 1, raw)
    if not acked:
        pipe.lpush(queue, raw)
    pipe.execute()
    return acked


def main():
    r = get_redis_client()
    recover_unacked(r)
    logger.info("[Worker] started, waiting on %s ...", settings.RAW_RESULT_QUEUE)

    while True:
        try:
            process_next(r)
        except redis.RedisError:
            logger.exception("[Worker] redis error, retrying in %ss", REDIS_RETRY_DELAY)
            time.sleep(REDIS_RETRY_DELAY)
        except Exception:
            # 单条消息出任何意外都不能让 worker 退出
            logger.exception("[Worker] unexpected error while processing message")


if __name__ == '__main__':
    main()
