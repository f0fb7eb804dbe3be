"""
Action Logger Tests
Write-once forensic records with secrets masked
"""

from unittest.mock import AsyncMock, patch

import psycopg2
import pytest

from action_logger import ActionLogger, mask_secret, scrub


class TestScrub:

    def test_mask_secret(self):
        assert mask_secret('Str0ng-Password') == 'Str****'
        assert mask_secret('short') == '****'
        assert mask_secret(None) is None

    def test_nested_secrets_are_masked(self):
        data = {'vps': {'newpass': 'Hunter2-Hunter2', 'hostname': 'vps1'}, 'items': [{'apikey': 'abcdefgh'}]}
        scrubbed = scrub(data)
        assert scrubbed['vps'] == {'newpass': 'Hun****', 'hostname': 'vps1'}
        assert scrubbed['items'][0]['apikey'] == 'abc****'
        assert data['vps']['newpass'] == 'Hunter2-Hunter2'


@pytest.mark.asyncio
class TestFinalize:

    async def test_record_written_once(self):
        insert = AsyncMock(return_value=11)
        action_log = ActionLogger('service_action', order_id=4, action='reinstall', template_id=None)
        action_log.info('Reinstalling', {'password': 'Str0ng-Password-For-VM!'})
        action_log.set_provider_result('virtualizor', 'ostemplate', True, {'newpass': 'Str0ng-Password-For-VM!'}, duration_ms=12.5)

        with patch('action_logger.insert_action_log', insert):
            assert await action_log.finalize(True) == 11
            assert await action_log.finalize(False, 'late') is None

        insert.assert_awaited_once()
        record = insert.await_args.args[0]
        assert record['status'] == 'success'
        assert record['context'] == {'action': 'reinstall'}
        assert record['provider_result']['api_duration_ms'] == 12.5
        assert 'Str0ng-Password-For-VM!' not in str(record)
        assert record['entries'][-1]['message'] == 'service_action completed'
        assert record['duration_ms'] >= 0

    async def test_persistence_failure_is_logged_not_raised(self):
        action_log = ActionLogger('provisioning', order_id=1)
        with patch('action_logger.insert_action_log', AsyncMock(side_effect=psycopg2.OperationalError('down'))):
            assert await action_log.finalize(False, 'Out of stock') is None
        assert action_log.finalized is True
