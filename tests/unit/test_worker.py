"""
Unit tests for the Redis queue worker.

Redis 客户端用 MagicMock 代替，只验证 worker 对队列的操作顺序：
blmove 到 processing → 处理 → lrem（ack）/ 放回队列。
"""
import json
import pytest
import redis
from unittest.mock import MagicMock, call, patch
from django.db import DatabaseError

import worker
from labreview.exceptions import NotFoundError, UpstreamFailure, ValidationError
from labreview.models import RawBackup

MESSAGE = json.dumps({'test_order_id': '6a0c2b1e-0000-4000-8000-000000000001', 'test_type': 'CBC'})


class TestParseMessage:

    def test_snake_case(self):
        assert worker.parse_message(MESSAGE) == ('6a0c2b1e-0000-4000-8000-000000000001', 'CBC')

    def test_camel_case(self):
        raw = json.dumps({'testOrderId': 'abc', 'testType': 'UA'})
        assert worker.parse_message(raw) == ('abc', 'UA')

    @pytest.mark.parametrize('raw', ['not json', '[1, 2]', '{"test_type": "CBC"}'])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            worker.parse_message(raw)


@pytest.mark.django_db
class TestHandleMessage:

    @patch('worker.ingest_test_results')
    def test_success_acks_and_backs_up(self, mock_ingest):
        mock_ingest.return_value = MagicMock(message_id='m', created_count=2, duplicate=False)

        assert worker.handle_message(MESSAGE.encode('utf-8')) is True

        mock_ingest.assert_called_once_with('6a0c2b1e-0000-4000-8000-000000000001', 'CBC')
        assert RawBackup.objects.get().raw_content == MESSAGE

    @patch('worker.ingest_test_results')
    def test_retryable_failure_not_acked(self, mock_ingest):
        mock_ingest.side_effect = UpstreamFailure('timed out', retryable=True)
        assert worker.handle_message(MESSAGE) is False

    @patch('worker.ingest_test_results')
    def test_permanent_failure_acked(self, mock_ingest):
        mock_ingest.side_effect = NotFoundError('Test order not found')
        assert worker.handle_message(MESSAGE) is True

    @patch('worker.ingest_test_results')
    def test_bad_message_acked_but_backed_up(self, mock_ingest):
        assert worker.handle_message(b'garbage') is True

        mock_ingest.assert_not_called()
        assert RawBackup.objects.get().raw_content == 'garbage'

    @patch('worker.ingest_test_results')
    def test_undecodable_message_acked(self, mock_ingest):
        assert worker.handle_message(b'\xff\xfe{"test_order_id": "x"}') is True

        mock_ingest.assert_not_called()
        assert not RawBackup.objects.exists()

    @patch('worker.ingest_test_results')
    @patch('worker.save_raw_backup', side_effect=DatabaseError('connection lost'))
    def test_backup_database_error_not_acked(self, mock_backup, mock_ingest):
        assert worker.handle_message(MESSAGE) is False
        mock_ingest.assert_not_called()


class TestQueueOperations:

    def test_process_next_acks_on_success(self, settings):
        r = MagicMock()
        r.blmove.return_value = MESSAGE.encode('utf-8')
        pipe = r.pipeline.return_value

        with patch('worker.handle_message', return_value=True):
            assert worker.process_next(r, timeout=1) is True

        r.blmove.assert_called_once_with(
            settings.RAW_RESULT_QUEUE, settings.RAW_RESULT_PROCESSING_QUEUE, 1, src='RIGHT', dest='LEFT',
        )
        pipe.lrem.assert_called_once_with(settings.RAW_RESULT_PROCESSING_QUEUE, 1, MESSAGE.encode('utf-8'))
        pipe.lpush.assert_not_called()
        pipe.execute.assert_called_once_with()

    def test_process_next_requeues_on_retryable_failure(self, settings):
        r = MagicMock()
        r.blmove.return_value = b'msg'
        pipe = r.pipeline.return_value

        with patch('worker.handle_message', return_value=False):
            assert worker.process_next(r, timeout=1) is False

        pipe.lrem.assert_called_once_with(settings.RAW_RESULT_PROCESSING_QUEUE, 1, b'msg')
        pipe.lpush.assert_called_once_with(settings.RAW_RESULT_QUEUE, b'msg')

    @pytest.mark.django_db
    def test_process_next_drops_undecodable_message(self, settings):
        r = MagicMock()
        r.blmove.return_value = b'\xff'
        pipe = r.pipeline.return_value

        assert worker.process_next(r, timeout=1) is True

        pipe.lrem.assert_called_once_with(settings.RAW_RESULT_PROCESSING_QUEUE, 1, b'\xff')
        pipe.lpush.assert_not_called()
        pipe.execute.assert_called_once_with()

    def test_process_next_timeout(self):
        r = MagicMock()
        r.blmove.return_value = None

        with patch('worker.handle_message') as mock_handle:
            assert worker.process_next(r, timeout=1) is None

        mock_handle.assert_not_called()
        r.pipeline.assert_not_called()

    def test_recover_unacked(self, settings):
        r = MagicMock()
        r.lmove.side_effect = [b'a', b'b', None]

        assert worker.recover_unacked(r) == 2
        assert r.lmove.call_args_list == [
            call(settings.RAW_RESULT_PROCESSING_QUEUE, settings.RAW_RESULT_QUEUE, src='RIGHT', dest='RIGHT'),
        ] * 3

    def test_main_survives_unexpected_errors(self):
        r = MagicMock()
        # 第三次调用用 KeyboardInterrupt 跳出 while True
        steps = [ValueError('boom'), redis.ConnectionError('down'), KeyboardInterrupt()]

        with patch('worker.get_redis_client', return_value=r), \
                patch('worker.recover_unacked'), \
                patch('worker.time.sleep') as mock_sleep, \
                patch('worker.process_next', side_effect=steps) as mock_process:
            with pytest.raises(KeyboardInterrupt):
                worker.main()

        assert mock_process.call_count == 3
        mock_sleep.assert_called_once_with(worker.REDIS_RETRY_DELAY)
