"""
具体 AI reviewer 实现。

新增 reviewer：在此文件添加一个类，然后在 factory.py 注册即可。

已注册 reviewer：
  http      — HttpScoringReviewer  (外部打分服务 POST /review)
  anthropic — ClaudeReviewer       (claude-sonnet-4-20250514)
  openai    — OpenAIReviewer       (gpt-4o)
"""

import logging
import os

import requests
from django.conf import settings

from ..exceptions import UpstreamFailure
from .base import BaseAiReviewer
from .types import AiReviewRequest, AiVerdict

logger = logging.getLogger(__name__)


# ── HttpScoringReviewer ────────────────────────────────────────────────────
#
# POST {AI_REVIEW_URL}/review
#   {"test_order_id": "...", "results": [{"name", "value", "unit"}], "flags": [], "meta": {}}
# → {"predicted_status": "Normal", "ai_summary": "..."}

class HttpScoringReviewer(BaseAiReviewer):

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.AI_REVIEW_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.AI_REVIEW_TIMEOUT

    def review(self, request: AiReviewRequest) -> AiVerdict:
        url = f"{self.base_url}/review"
        try:
            response = requests.post(url, json=request.to_payload(), timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise UpstreamFailure(
                message=f"AI review service timed out after {self.timeout}s.",
                code="AI_TIMEOUT",
                detail={"test_order_id": request.test_order_id},
                retryable=True,
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise UpstreamFailure(
                message="AI review service is unreachable.",
                code="AI_UNAVAILABLE",
                detail={"test_order_id": request.test_order_id, "error": str(exc)},
                retryable=True,
            ) from exc

        if not response.ok:
            raise UpstreamFailure(
                message=f"AI API Error: {response.status_code}",
                code="AI_API_ERROR",
                detail={
                    "test_order_id": request.test_order_id,
                    "remote_status": response.status_code,
                    "remote_body": response.text[:1000],
                },
                retryable=response.status_code >= 500,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamFailure(
                message="AI review response is not valid JSON.",
                code="AI_MALFORMED_RESPONSE",
                detail={"remote_body": response.text[:1000]},
            ) from exc

        return self.parse_verdict(body, model="http")


# ── LLM reviewers ──────────────────────────────────────────────────────────
#
# 没有打分服务时，直接让 LLM 给出同样格式的 JSON verdict。

SYSTEM_PROMPT = (
    "You are a clinical laboratory reviewer. You receive the measured parameters of one "
    "lab test order and give one overall status for the order."
)


def build_review_prompt(request: AiReviewRequest) -> str:
    lines = "\n".join(
        f"- {r.name}: {r.value} {r.unit}".rstrip() for r in request.results
    )
    return f"""Test order: {request.test_order_id}

Measured parameters:
{lines}

Respond ONLY with valid JSON, no markdown or extra text:
{{
    "predicted_status": "Normal" | "Low" | "High" | "Abnormal",
    "ai_summary": "two or three sentences explaining the overall picture"
}}"""


class ClaudeReviewer(BaseAiReviewer):
    """环境变量：ANTHROPIC_API_KEY，模型可通过 ANTHROPIC_MODEL 覆盖。"""

    DEFAULT_MODEL = "claude-sonnet-4-20250514"

    def review(self, request: AiReviewRequest) -> AiVerdict:
        import anthropic

        api_key = os.getenv("ANTHROPIC_API_KEY") or settings.ANTHROPIC_API_KEY
        if not api_key:
            raise UpstreamFailure("ANTHROPIC_API_KEY is not set", code="AI_NOT_CONFIGURED")

        model = os.getenv("ANTHROPIC_MODEL", self.DEFAULT_MODEL)
        client = anthropic.Anthropic(api_key=api_key, timeout=settings.AI_REVIEW_TIMEOUT)

        try:
            response = client.messages.create(
                model=model,
                max_tokens=500,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": build_review_prompt(request)}],
            )
        except anthropic.APIError as exc:
            raise UpstreamFailure(
                message=f"Anthropic API error: {exc}",
                code="AI_API_ERROR",
                detail={"test_order_id": request.test_order_id},
                retryable=isinstance(exc, anthropic.APIConnectionError),
            ) from exc

        return self.parse_verdict(response.content[0].text, model=model)


class OpenAIReviewer(BaseAiReviewer):
    """环境变量：OPENAI_API_KEY，模型可通过 OPENAI_MODEL 覆盖。"""

    DEFAULT_MODEL = "gpt-4o"

    def review(self, request: AiReviewRequest) -> AiVerdict:
        import openai

        api_key = os.getenv("OPENAI_API_KEY") or settings.OPENAI_API_KEY
        if not api_key:
            raise UpstreamFailure("OPENAI_API_KEY is not set", code="AI_NOT_CONFIGURED")

        model = os.getenv("OPENAI_MODEL", self.DEFAULT_MODEL)
        client = openai.OpenAI(api_key=api_key, timeout=settings.AI_REVIEW_TIMEOUT)

        try:
            response = client.chat.completions.create(
                model=model,
                max_tokens=500,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user",   "content": build_review_prompt(request)},
                ],
            )
        except openai.APIError as exc:
            raise UpstreamFailure(
                message=f"OpenAI API error: {exc}",
                code="AI_API_ERROR",
                detail={"test_order_id": request.test_order_id},
                retryable=isinstance(exc, openai.APIConnectionError),
            ) from exc

        return self.parse_verdict(response.choices[0].message.content, model=model)
