"""
TestOrder 状态机。

    created / pending / ongoing ──(AI review)──▶ reviewed_by_ai ──(全部确认)──▶ completed

只能往前走，没有回退路径。cancelled 对这里来说是终态。
所有状态变更都走 ensure_transition()，不要在业务代码里散落字符串比较。
"""

from .exceptions import PreconditionFailed
from .models import OrderStatus

ALLOWED_TRANSITIONS = {
    OrderStatus.CREATED: {OrderStatus.REVIEWED_BY_AI},
    OrderStatus.PENDING: {OrderStatus.REVIEWED_BY_AI},
    OrderStatus.ONGOING: {OrderStatus.REVIEWED_BY_AI},
    OrderStatus.REVIEWED_BY_AI: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


def can_transition(current, target):
    return OrderStatus(target) in ALLOWED_TRANSITIONS.get(OrderStatus(current), set())


def ensure_transition(order, target):
    """状态不允许迁移到 target 时抛 PreconditionFailed。"""
    if not can_transition(order.status, target):
        raise PreconditionFailed(
            message=f"Test order cannot move from '{order.status}' to '{target}'.",
            code='INVALID_STATUS_TRANSITION',
            detail={
                'test_order_id': str(order.id),
                'current_status': order.status,
                'target_status': str(target),
            },
        )
