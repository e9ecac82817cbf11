"""
Unit tests for trigger_ai_review() and the AI review mode toggle.

reviewer 用 FakeReviewer 注入，HTTP 层用 patch 确认「前置条件不满足时一次外部调用都没有」。
"""
import uuid
import pytest
from unittest.mock import patch
from django.db import DatabaseError

from labreview.exceptions import NotFoundError, PersistenceFailure, PreconditionFailed, UpstreamFailure
from labreview.models import EventLog, OrderStatus, TestOrder
from labreview.services import (
    build_review_request,
    get_ai_review_mode,
    set_ai_review_mode,
    trigger_ai_review,
)
from tests.conftest import FakeReviewer, TestOrderFactory, TestResultFactory


@pytest.fixture
def order_with_results():
    order = TestOrderFactory(status=OrderStatus.PENDING, is_ai_review_enabled=True)
    TestResultFactory(test_order=order, parameter='Hemoglobin', value_numeric=10.0, unit='g/dL')
    TestResultFactory(test_order=order, parameter='Color', value_numeric=None, value_text='Yellow', unit='')
    return order


@pytest.mark.django_db
class TestTriggerAiReview:

    def test_applies_verdict_to_every_result(self, order_with_results):
        reviewer = FakeReviewer(predicted_status='Abnormal', ai_summary='Low haemoglobin.')

        outcome = trigger_ai_review(order_with_results.id, reviewer=reviewer)

        assert outcome.verdict.predicted_status == 'Abnormal'
        assert outcome.verdict.ai_summary == 'Low haemoglobin.'
        assert outcome.order.status == OrderStatus.REVIEWED_BY_AI
        assert outcome.order.ai_reviewed_at is not None

        order = TestOrder.objects.get(id=order_with_results.id)
        assert order.status == OrderStatus.REVIEWED_BY_AI
        for result in order.results.all():
            assert result.reviewed_by_ai is True
            assert result.result_status == 'Abnormal'
            assert result.ai_reviewed_date is not None
            assert result.is_confirmed is False

    def test_request_payload(self, order_with_results):
        reviewer = FakeReviewer()

        trigger_ai_review(order_with_results.id, reviewer=reviewer)

        payload = reviewer.requests[0].to_payload()
        assert payload['test_order_id'] == str(order_with_results.id)
        assert payload['results'] == [
            {'name': 'Hemoglobin', 'value': 10.0, 'unit': 'g/dL'},
            {'name': 'Color', 'value': 0, 'unit': ''},   # 没有数值 → 0
        ]
        assert payload['flags'] == []
        assert payload['meta'] == {}

    @pytest.mark.parametrize('status', [OrderStatus.CREATED, OrderStatus.ONGOING])
    def test_other_open_statuses(self, status):
        order = TestOrderFactory(status=status)
        TestResultFactory(test_order=order)

        outcome = trigger_ai_review(order.id, reviewer=FakeReviewer())

        assert outcome.order.status == OrderStatus.REVIEWED_BY_AI

    def test_verdict_not_persisted_on_order(self, order_with_results):
        trigger_ai_review(order_with_results.id, reviewer=FakeReviewer(ai_summary='transient'))

        order = TestOrder.objects.get(id=order_with_results.id)
        assert not hasattr(order, 'ai_summary')

    def test_audit_event(self, order_with_results, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            trigger_ai_review(order_with_results.id, reviewer=FakeReviewer())

        event = EventLog.objects.get()
        assert event.event_id == 'E_00011'
        assert event.entity_id == order_with_results.id


@pytest.mark.django_db
class TestTriggerAiReviewPreconditions:

    @patch('labreview.ai.services.requests.post')
    def test_disabled_makes_no_outbound_call(self, mock_post, settings):
        settings.AI_REVIEW_PROVIDER = 'http'
        order = TestOrderFactory(is_ai_review_enabled=False)
        TestResultFactory(test_order=order)

        with pytest.raises(PreconditionFailed) as exc_info:
            trigger_ai_review(order.id)

        assert exc_info.value.code == 'AI_REVIEW_DISABLED'
        mock_post.assert_not_called()
        order.refresh_from_db()
        assert order.status == OrderStatus.PENDING

    def test_missing_order(self):
        reviewer = FakeReviewer()

        with pytest.raises(NotFoundError):
            trigger_ai_review(uuid.uuid4(), reviewer=reviewer)

        assert reviewer.requests == []

    def test_deleted_order(self):
        order = TestOrderFactory(is_deleted=True)
        TestResultFactory(test_order=order)

        with pytest.raises(NotFoundError):
            trigger_ai_review(order.id, reviewer=FakeReviewer())

    def test_no_results(self):
        reviewer = FakeReviewer()
        order = TestOrderFactory()

        with pytest.raises(PreconditionFailed) as exc_info:
            trigger_ai_review(order.id, reviewer=reviewer)

        assert exc_info.value.code == 'NO_RESULTS'
        assert reviewer.requests == []

    @pytest.mark.parametrize('status', [
        OrderStatus.REVIEWED_BY_AI, OrderStatus.COMPLETED, OrderStatus.CANCELLED,
    ])
    def test_not_reviewable_status(self, status):
        reviewer = FakeReviewer()
        order = TestOrderFactory(status=status)
        TestResultFactory(test_order=order)

        with pytest.raises(PreconditionFailed) as exc_info:
            trigger_ai_review(order.id, reviewer=reviewer)

        assert exc_info.value.code == 'INVALID_STATUS_TRANSITION'
        assert reviewer.requests == []


@pytest.mark.django_db
class TestTriggerAiReviewFailures:

    def test_reviewer_failure_changes_nothing(self, order_with_results):
        error = UpstreamFailure('AI API Error: 500', code='AI_API_ERROR', detail={'remote_status': 500})

        with pytest.raises(UpstreamFailure):
            trigger_ai_review(order_with_results.id, reviewer=FakeReviewer(error=error))

        order = TestOrder.objects.get(id=order_with_results.id)
        assert order.status == OrderStatus.PENDING
        assert not order.results.filter(reviewed_by_ai=True).exists()

    def test_database_error(self, order_with_results):
        with patch('labreview.services.TestResult.objects.bulk_update', side_effect=DatabaseError('locked')):
            with pytest.raises(PersistenceFailure):
                trigger_ai_review(order_with_results.id, reviewer=FakeReviewer())

        order = TestOrder.objects.get(id=order_with_results.id)
        assert order.status == OrderStatus.PENDING

    def test_disabled_while_waiting_for_reviewer(self, order_with_results):
        class DisablingReviewer(FakeReviewer):
            def review(self, request):
                TestOrder.objects.filter(id=order_with_results.id).update(is_ai_review_enabled=False)
                return super().review(request)

        with pytest.raises(PreconditionFailed):
            trigger_ai_review(order_with_results.id, reviewer=DisablingReviewer())

        assert not order_with_results.results.filter(reviewed_by_ai=True).exists()


@pytest.mark.django_db
class TestBuildReviewRequest:

    def test_uses_parameter_names(self, order_with_results):
        request = build_review_request(order_with_results, list(order_with_results.results.all()))
        assert [r.name for r in request.results] == ['Hemoglobin', 'Color']


@pytest.mark.django_db
class TestAiReviewMode:

    def test_enable_and_disable(self):
        order = TestOrderFactory(is_ai_review_enabled=False)

        set_ai_review_mode(order.id, True)
        assert get_ai_review_mode(order.id) is True

        set_ai_review_mode(order.id, False)
        assert get_ai_review_mode(order.id) is False

    def test_toggle_does_not_change_status(self):
        order = TestOrderFactory(status=OrderStatus.ONGOING, is_ai_review_enabled=False)

        set_ai_review_mode(order.id, True)

        order.refresh_from_db()
        assert order.status == OrderStatus.ONGOING

    def test_missing_order(self):
        with pytest.raises(NotFoundError):
            set_ai_review_mode(uuid.uuid4(), True)
        with pytest.raises(NotFoundError):
            get_ai_review_mode(uuid.uuid4())

    def test_deleted_order(self):
        order = TestOrderFactory(is_deleted=True)
        with pytest.raises(NotFoundError):
            set_ai_review_mode(order.id, True)

    def test_audit_event(self, django_capture_on_commit_callbacks):
        order = TestOrderFactory(is_ai_review_enabled=False)

        with django_capture_on_commit_callbacks(execute=True):
            set_ai_review_mode(order.id, True)

        event = EventLog.objects.get()
        assert event.event_id == 'E_00013'
        assert 'enabled' in event.message
