"""
工厂函数：根据 settings.AI_REVIEW_PROVIDER 返回对应的 reviewer 实例。

换 reviewer 只需改环境变量 AI_REVIEW_PROVIDER，代码零改动。
"""

from django.conf import settings

from .base import BaseAiReviewer


def _build_registry() -> dict[str, type[BaseAiReviewer]]:
    # 延迟导入，避免在 Django 启动前触发 SDK import
    from .services import ClaudeReviewer, HttpScoringReviewer, OpenAIReviewer

    return {
        "http":      HttpScoringReviewer,
        "anthropic": ClaudeReviewer,
        "openai":    OpenAIReviewer,
    }


def get_ai_reviewer() -> BaseAiReviewer:
    """
    Raises:
        ValueError: AI_REVIEW_PROVIDER 未知
    """
    provider = getattr(settings, "AI_REVIEW_PROVIDER", "http")
    registry = _build_registry()
    reviewer_cls = registry.get(provider)

    if reviewer_cls is None:
        raise ValueError(
            f"Unknown AI_REVIEW_PROVIDER: {provider!r}. "
            f"Known providers: {list(registry.keys())}"
        )

    return reviewer_cls()
