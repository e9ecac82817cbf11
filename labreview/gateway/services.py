"""
具体 Gateway 实现。

新增结果来源：在此文件添加一个类，然后在 factory.py 注册即可。

已注册来源：
  warehouse — WarehouseHttpGateway   (仓库服务 HTTP/JSON，camelCase 或 snake_case)
"""

import logging
from datetime import timezone as dt_timezone
from typing import Any

import requests
from django.conf import settings
from django.utils.dateparse import parse_datetime
from django.utils import timezone

from ..exceptions import UpstreamFailure
from .base import BaseResultGateway
from .types import RawResultBatch, RawResultItem

logger = logging.getLogger(__name__)


# ── WarehouseHttpGateway ───────────────────────────────────────────────────
#
# 请求：POST {WAREHOUSE_URL}/process-test-order  {"order_id": "...", "test_type": "CBC"}
#
# 响应示例（JSON）:
# {
#   "testOrderId":   "6a0c…",
#   "instrument":    "Sysmex XN-1000",
#   "performedDate": "2025-01-15T08:30:00Z",
#   "results": [
#     { "testCode": "WBC", "parameter": "White Blood Cells", "valueNumeric": 9.1,
#       "valueText": null, "unit": "10^3/uL", "referenceRange": "4-10", "status": "Normal" }
#   ]
# }
# snake_case 的同名字段也接受。

class WarehouseHttpGateway(BaseResultGateway):
    source = "warehouse"

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.WAREHOUSE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.WAREHOUSE_TIMEOUT

    def request(self, order_id: str, test_type: str) -> Any:
        url = f"{self.base_url}/process-test-order"
        logger.info("[Gateway] fetching raw results order_id=%s test_type=%s", order_id, test_type)

        try:
            response = requests.post(
                url,
                json={"order_id": order_id, "test_type": test_type},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise UpstreamFailure(
                message=f"Warehouse service timed out after {self.timeout}s.",
                code="GATEWAY_TIMEOUT",
                detail={"test_order_id": order_id, "error": str(exc)},
                retryable=True,
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise UpstreamFailure(
                message="Warehouse service is unreachable.",
                code="GATEWAY_UNAVAILABLE",
                detail={"test_order_id": order_id, "error": str(exc)},
                retryable=True,
            ) from exc

        if not response.ok:
            raise UpstreamFailure(
                message=f"Warehouse service returned HTTP {response.status_code}.",
                code="GATEWAY_ERROR",
                detail={
                    "test_order_id": order_id,
                    "remote_status": response.status_code,
                    "remote_body": response.text[:1000],
                },
                # 5xx 可能是暂时的，4xx 重试也没用
                retryable=response.status_code >= 500,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamFailure(
                message="Warehouse service returned a non-JSON body.",
                code="GATEWAY_MALFORMED_RESPONSE",
                detail={"test_order_id": order_id, "remote_body": response.text[:1000]},
            ) from exc

    @staticmethod
    def _pick(raw: dict, *keys, default=None):
        for key in keys:
            if raw.get(key) is not None:
                return raw[key]
        return default

    @staticmethod
    def _parse_performed_date(value) -> Any:
        performed = parse_datetime(value) if isinstance(value, str) else None
        if performed is None:
            raise UpstreamFailure(
                message=f"Invalid performed date from warehouse: {value!r}.",
                code="GATEWAY_MALFORMED_RESPONSE",
            )
        if timezone.is_naive(performed):
            performed = timezone.make_aware(performed, dt_timezone.utc)
        return performed

    @staticmethod
    def _to_float(value):
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise UpstreamFailure(
                message=f"Invalid numeric value from warehouse: {value!r}.",
                code="GATEWAY_MALFORMED_RESPONSE",
            ) from exc

    def transform(self, payload: Any) -> RawResultBatch:
        if not isinstance(payload, dict):
            raise UpstreamFailure(
                message="Warehouse response is not a JSON object.",
                code="GATEWAY_MALFORMED_RESPONSE",
            )

        pick = self._pick
        items = [
            RawResultItem(
                test_code=str(pick(item, "testCode", "test_code", default="")).strip(),
                parameter=str(pick(item, "parameter", default="")).strip(),
                value_numeric=self._to_float(pick(item, "valueNumeric", "value_numeric")),
                value_text=pick(item, "valueText", "value_text"),
                unit=str(pick(item, "unit", default="")).strip(),
                reference_range=str(pick(item, "referenceRange", "reference_range", default="")).strip(),
                status=str(pick(item, "status", default="")).strip(),
            )
            for item in (pick(payload, "results", default=[]) or [])
        ]

        return RawResultBatch(
            test_order_id=str(pick(payload, "testOrderId", "test_order_id", default="")),
            instrument=str(pick(payload, "instrument", default="")).strip(),
            performed_date=self._parse_performed_date(pick(payload, "performedDate", "performed_date")),
            items=items,
            raw_payload=payload,
        )
