import logging
from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded

from .exceptions import BaseAppException

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,   # 初始重试延迟（秒），指数退避会乘以 2^retry_count
    acks_late=True,           # 任务执行完才 ack，防止 worker 崩溃时消息丢失
    reject_on_worker_lost=True,
)
def ingest_test_results_task(self, order_id: str, test_type: str):
    """
    异步拉取并落库一次仪器运行的结果。

    重试策略：
      - 只有 retryable 的错误（gateway 超时 / 连接失败 / 5xx、数据库错误）才重试
      - 指数退避：10s → 20s → 40s
      - 重复投递由 ledger 兜底，重试不会产生重复结果
      - NotFound / Precondition 这类业务错误重试也没用，记日志后丢弃
    """
    from labreview.services import ingest_test_results

    logger.info(
        "[Celery][ingest_test_results] 开始处理 order_id=%s test_type=%s (attempt %d/%d)",
        order_id, test_type, self.request.retries + 1, self.max_retries + 1,
    )

    try:
        result = ingest_test_results(order_id, test_type)

    except SoftTimeLimitExceeded:
        # 事务已经随异常回滚，ledger 里不会留下记录
        logger.error("[Celery] order_id=%s 超过 soft time limit，放弃本次处理", order_id)
        raise

    except BaseAppException as exc:
        if not exc.retryable:
            logger.error(
                "[Celery] order_id=%s 处理失败，不重试: %s %s",
                order_id, exc.code, exc.message,
            )
            return None

        logger.warning(
            "[Celery] order_id=%s 处理失败 (attempt %d): %s %s",
            order_id, self.request.retries + 1, exc.code, exc.message,
        )
        if self.request.retries < self.max_retries:
            # 指数退避：countdown = 10 * 2^retries → 10s, 20s, 40s
            countdown = self.default_retry_delay * (2 ** self.request.retries)
            logger.info(
                "[Celery] 将在 %ds 后重试 (第 %d 次)...",
                countdown, self.request.retries + 1,
            )
            raise self.retry(exc=exc, countdown=countdown)

        logger.error("[Celery] order_id=%s 已达最大重试次数，放弃", order_id)
        raise

    logger.info(
        "[Celery] order_id=%s 处理完成 message_id=%s created=%d duplicate=%s",
        order_id, result.message_id, result.created_count, result.duplicate,
    )
    return {
        'message_id': result.message_id,
        'created_count': result.created_count,
        'duplicate': result.duplicate,
    }
