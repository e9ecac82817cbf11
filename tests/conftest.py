"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
外部服务（仓库 gateway / AI reviewer）用下面的 Fake 实现代替，不发真实 HTTP 请求。
"""
import uuid

import pytest
from datetime import datetime, timezone as dt_timezone
from django.test import Client
from django.utils import timezone

import factory
from labreview.ai.base import BaseAiReviewer
from labreview.ai.types import AiVerdict
from labreview.exceptions import UpstreamFailure
from labreview.gateway.base import BaseResultGateway
from labreview.gateway.types import RawResultBatch, RawResultItem
from labreview.models import (
    FlaggingConfig,
    OrderStatus,
    Patient,
    ProcessedMessage,
    TestOrder,
    TestResult,
)

PERFORMED_AT = datetime(2024, 5, 1, 8, 30, 15, tzinfo=dt_timezone.utc)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class PatientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Patient

    mrn = factory.Sequence(lambda n: f'{100000 + n}')
    first_name = 'John'
    last_name = 'Doe'
    gender = 'Male'


class TestOrderFactory(factory.django.DjangoModelFactory):
    __test__ = False

    class Meta:
        model = TestOrder

    patient = factory.SubFactory(PatientFactory)
    order_code = factory.Sequence(lambda n: f'ORD-{n:05d}')
    test_type = 'CBC'
    status = OrderStatus.PENDING
    is_ai_review_enabled = True


class TestResultFactory(factory.django.DjangoModelFactory):
    __test__ = False

    class Meta:
        model = TestResult

    test_order = factory.SubFactory(TestOrderFactory)
    message_id = factory.LazyAttribute(lambda o: f'{o.test_order.id}_20240501083015')
    test_code = 'HGB'
    parameter = 'Hemoglobin'
    value_numeric = 14.0
    unit = 'g/dL'
    instrument = 'Sysmex XN-1000'
    performed_date = PERFORMED_AT
    flag = 'Normal'
    result_status = 'Normal'


class FlaggingConfigFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = FlaggingConfig

    test_code = 'HGB'
    parameter_name = 'Hemoglobin'
    unit = 'g/dL'
    gender = None
    min = 12.0
    max = 17.5
    version = 1
    is_active = True
    effective_date = factory.LazyFunction(timezone.now)


class ProcessedMessageFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ProcessedMessage

    message_id = factory.Sequence(lambda n: f'msg_{n}')
    source_system = 'Warehouse_HTTP'
    test_order_id = factory.LazyFunction(uuid.uuid4)
    state = ProcessedMessage.STATE_FINALIZED
    processed_at = factory.LazyFunction(timezone.now)
    created_count = 0


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

def make_batch(order_id, items=None, performed_date=PERFORMED_AT, instrument='Sysmex XN-1000'):
    if items is None:
        items = [
            RawResultItem(test_code='HGB', parameter='Hemoglobin', value_numeric=10.0, unit='g/dL'),
            RawResultItem(test_code='WBC', parameter='White Blood Cells', value_numeric=7.0, unit='10^9/L'),
        ]
    return RawResultBatch(
        test_order_id=str(order_id),
        instrument=instrument,
        performed_date=performed_date,
        items=items,
    )


class FakeGateway(BaseResultGateway):
    """request() 直接返回构造好的 batch；error 不为空时抛出。"""

    source = 'fake'

    def __init__(self, batch=None, error=None):
        self.batch = batch
        self.error = error
        self.calls = 0

    def request(self, order_id, test_type):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.batch

    def transform(self, payload):
        return payload


class FakeReviewer(BaseAiReviewer):

    def __init__(self, predicted_status='Normal', ai_summary='All values look fine.', error=None):
        self.verdict = AiVerdict(predicted_status=predicted_status, ai_summary=ai_summary, model='fake')
        self.error = error
        self.requests = []

    def review(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.verdict


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


@pytest.fixture
def order():
    return TestOrderFactory()


@pytest.fixture
def hgb_config():
    return FlaggingConfigFactory()


@pytest.fixture
def reviewed_order():
    """已经 AI review 过、三条结果都还没确认的 order。"""
    order = TestOrderFactory(status=OrderStatus.REVIEWED_BY_AI, ai_reviewed_at=timezone.now())
    TestResultFactory.create_batch(
        3, test_order=order, reviewed_by_ai=True, ai_reviewed_date=timezone.now(),
    )
    return order


@pytest.fixture
def gateway_timeout():
    return UpstreamFailure('Warehouse service timed out.', code='GATEWAY_TIMEOUT', retryable=True)
