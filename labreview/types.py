"""
Service 层的返回结构。

View / task 只消费这些 dataclass，序列化在 serializers.py 里做。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .ai.types import AiVerdict


@dataclass
class IngestionResult:
    success: bool
    message: str
    message_id: str
    created_count: int
    processed_at: datetime
    duplicate: bool = False


@dataclass
class AiReviewOutcome:
    """
    order + 刚被 AI 标记过的 results + 本次 verdict。

    verdict（ai_summary / predicted_status）只随这次返回，不落库，重新加载 order 就没了。
    """

    order: Any
    results: list = field(default_factory=list)
    verdict: AiVerdict | None = None


@dataclass
class ConfirmationOutcome:
    # confirmed 只包含这次调用确认的 results
    order: Any
    confirmed: list = field(default_factory=list)
    completed: bool = False


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    recalculated: int = 0
