"""
BaseAiReviewer — 所有 AI review 实现的抽象基类。

每个新 reviewer 只需：
1. 继承 BaseAiReviewer
2. 实现 review()
3. 在 factory.py 的 _build_registry 注册一行

services.py 完全不知道背后用哪家。
"""

import json
from abc import ABC, abstractmethod

from ..exceptions import UpstreamFailure
from .types import AiReviewRequest, AiVerdict


class BaseAiReviewer(ABC):

    @abstractmethod
    def review(self, request: AiReviewRequest) -> AiVerdict:
        """
        调用外部 AI，返回 AiVerdict。

        Raises:
            UpstreamFailure: 调用失败、超时、返回格式不对。
                             绝不能吞掉错误返回一个默认的 "ok"。
        """

    @staticmethod
    def parse_verdict(body, model: str = "") -> AiVerdict:
        """{"predicted_status": ..., "ai_summary": ...} → AiVerdict。body 可以是 dict 或 JSON 字符串。"""
        if isinstance(body, str):
            text = body.strip()
            # LLM 有时会包一层 ```json ... ```
            if text.startswith("```"):
                text = text.strip("`")
                if text.lower().startswith("json"):
                    text = text[4:]
            try:
                body = json.loads(text)
            except ValueError as exc:
                raise UpstreamFailure(
                    message="AI review response is not valid JSON.",
                    code="AI_MALFORMED_RESPONSE",
                    detail={"remote_body": body[:1000]},
                ) from exc

        if not isinstance(body, dict):
            raise UpstreamFailure(
                message="AI review response is not a JSON object.",
                code="AI_MALFORMED_RESPONSE",
            )

        predicted_status = body.get("predicted_status")
        if not isinstance(predicted_status, str) or not predicted_status.strip():
            raise UpstreamFailure(
                message="AI review response has no predicted_status.",
                code="AI_MALFORMED_RESPONSE",
                detail={"remote_body": body},
            )

        summary = body.get("ai_summary") or ""
        return AiVerdict(
            predicted_status=predicted_status.strip(),
            ai_summary=str(summary),
            model=model,
        )
