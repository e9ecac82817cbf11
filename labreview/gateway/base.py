"""
BaseResultGateway — 所有仪器结果来源的抽象基类。

每个新来源只需：
1. 继承 BaseResultGateway
2. 实现 request() 和 transform()
3. 在 factory.py 的 _build_registry 注册一行

ingestion 代码无需任何改动。
"""

from abc import ABC, abstractmethod
from typing import Any

from ..exceptions import UpstreamFailure
from .types import RawResultBatch


class BaseResultGateway(ABC):
    """
    三步流水线：request → transform → validate

    任何一步失败都抛 UpstreamFailure。绝不能把失败变成「空但成功」的结果，
    否则 ledger 会记下一条 created_count=0 的成功记录，之后的重投递全被当成重复。
    """

    # 子类声明自己对应的 source 标识符（与 factory 注册键一致，也写进 ledger）
    source: str = ""

    # ── 必须实现 ───────────────────────────────────────────────────────────

    @abstractmethod
    def request(self, order_id: str, test_type: str) -> Any:
        """调用远端服务，返回原始响应体（通常是 dict）。"""

    @abstractmethod
    def transform(self, payload: Any) -> RawResultBatch:
        """把原始响应转换成 RawResultBatch，原始数据存入 raw_payload。"""

    # ── 提供默认实现，子类可 override ──────────────────────────────────────

    def validate(self, batch: RawResultBatch, order_id: str) -> None:
        if not batch.items:
            raise UpstreamFailure(
                message=f"No results returned for test order {order_id}.",
                code="NO_RESULTS_RETURNED",
                detail={"test_order_id": str(order_id), "source": self.source},
            )

        if batch.test_order_id and str(batch.test_order_id) != str(order_id):
            raise UpstreamFailure(
                message="Gateway returned results for a different test order.",
                code="ORDER_MISMATCH",
                detail={"requested": str(order_id), "returned": str(batch.test_order_id)},
            )

    # ── 对外统一入口 ───────────────────────────────────────────────────────

    def fetch_raw_results(self, order_id, test_type: str) -> RawResultBatch:
        """request → transform → validate，返回校验通过的 RawResultBatch。"""
        payload = self.request(str(order_id), test_type)
        batch = self.transform(payload)
        self.validate(batch, order_id)
        return batch
