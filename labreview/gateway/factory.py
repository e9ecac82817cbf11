"""
工厂函数：根据 settings.RESULT_GATEWAY 返回对应的 Gateway 实例。

新增结果来源只需：
  1. 在 services.py 新建 XxxGateway(BaseResultGateway) 类
  2. 在此处 _build_registry 加一行
  不需要修改 ingestion 或任何业务代码。
"""

from django.conf import settings

from .base import BaseResultGateway


def _build_registry() -> dict[str, type[BaseResultGateway]]:
    # 延迟导入，避免在 Django 启动前触发 requests import
    from .services import WarehouseHttpGateway

    return {
        "warehouse": WarehouseHttpGateway,
    }


def get_result_gateway() -> BaseResultGateway:
    """
    Raises:
        ValueError: RESULT_GATEWAY 未知
    """
    name = getattr(settings, "RESULT_GATEWAY", "warehouse")
    registry = _build_registry()
    gateway_cls = registry.get(name)

    if gateway_cls is None:
        raise ValueError(
            f"Unknown RESULT_GATEWAY: {name!r}. "
            f"Known gateways: {list(registry.keys())}"
        )

    return gateway_cls()
