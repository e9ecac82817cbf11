"""
AI review 层的标准请求 / 响应结构。

所有 reviewer 实现的 review() 都接收 AiReviewRequest、返回 AiVerdict。
业务层（services.py）只认识这个格式，不知道背后是打分服务还是哪家 LLM。
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ReviewItem:
    name: str
    value: float
    unit: str = ""


@dataclass
class AiReviewRequest:
    test_order_id: str
    results: list[ReviewItem] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "test_order_id": self.test_order_id,
            "results": [
                {"name": r.name, "value": r.value, "unit": r.unit}
                for r in self.results
            ],
            "flags": list(self.flags),
            "meta": dict(self.meta),
        }


@dataclass
class AiVerdict:
    """只在本次请求里有效，不落库。"""

    predicted_status: str
    ai_summary: str = ""
    model: str = ""
