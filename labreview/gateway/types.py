"""
RawResultBatch dataclass — ingestion 唯一认识的仪器结果格式。

所有 Gateway 的 transform() 必须返回这个结构。
业务层（services.py）只消费这个结构，永远不碰仓库服务的原始响应。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class RawResultItem:
    test_code: str
    parameter: str
    value_numeric: float | None = None
    value_text: str | None = None
    unit: str = ""
    reference_range: str = ""
    status: str = ""              # 仪器自己给的判定，只作参考


@dataclass
class RawResultBatch:
    """
    一次仪器运行的全部结果。

    performed_date 决定 ledger 的 message_id，同一次运行的重复投递会撞到同一个 id。
    raw_payload    保存原始响应，用于排查问题，不参与业务逻辑。
    """

    test_order_id: str
    instrument: str
    performed_date: datetime
    items: list[RawResultItem] = field(default_factory=list)
    raw_payload: Any = field(default=None, repr=False)
