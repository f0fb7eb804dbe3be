"""
Database Layer Tests
SQL building, connection retry/rollback handling and constraint → error mapping
"""

from unittest.mock import AsyncMock, MagicMock, patch

import psycopg2
import psycopg2.errors
import pytest
from psycopg2.extras import Json

import database
from services.errors import ConflictFailed, ValidationFailed


def _connection(rows=None, fetchone=None):
    """Fake pooled connection whose cursor works as a context manager"""
    conn = MagicMock()
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.description = [('id',)]
    cursor.fetchall.return_value = rows or []
    cursor.fetchone.return_value = fetchone
    cursor.rowcount = 1
    return conn, cursor


class TestOrderUpdateSql:

    def test_rejects_billing_columns(self):
        with pytest.raises(ValidationFailed, match='price'):
            database._order_update_sql(1, {'provisioning_status': 'active', 'price': 0})

    def test_builds_sorted_assignments(self):
        query, params = database._order_update_sql(7, {'ip_address': '1.2.3.4', 'auto_provisioned': True})
        assert 'auto_provisioned = %s, ip_address = %s' in query
        assert query.endswith('RETURNING *')
        assert params == (True, '1.2.3.4', 7)

    def test_jsonb_columns_are_wrapped(self):
        _, params = database._order_update_sql(7, {'server_details': {'power_state': 'running'}, 'ip_address': None})
        assert params[0] is None
        assert isinstance(params[1], Json)

    def test_adapt_params_wraps_dicts_only(self):
        adapted = database._adapt_params((1, 'a', {'k': 'v'}, ['x']))
        assert adapted[:2] == (1, 'a')
        assert isinstance(adapted[2], Json)
        assert adapted[3] == ['x']
        assert database._adapt_params(None) is None


@pytest.mark.asyncio
class TestConnectionHandling:
    """Retry on dead connections, rollback on errors"""

    async def test_query_returns_rows(self):
        conn, cursor = _connection(rows=[{'id': 1}])
        with patch('database.get_connection', return_value=conn), \
                patch('database.return_connection') as returned:
            rows = await database.execute_query("SELECT * FROM orders WHERE id = %s", (1,))

        assert rows == [{'id': 1}]
        cursor.execute.assert_called_once_with("SELECT * FROM orders WHERE id = %s", (1,))
        returned.assert_called_once_with(conn)

    async def test_query_retries_dropped_connection(self):
        conn, _ = _connection(rows=[{'ok': 1}])
        get_connection = MagicMock(side_effect=[psycopg2.OperationalError('server closed the connection'), conn])
        with patch('database.get_connection', get_connection), \
                patch('database.return_connection'), \
                patch('database.recreate_connection_pool') as recreate, \
                patch('database.time.sleep'):
            rows = await database.execute_query("SELECT 1 AS ok")

        assert rows == [{'ok': 1}]
        assert get_connection.call_count == 2
        recreate.assert_called_once()

    async def test_query_gives_up_after_retries(self):
        get_connection = MagicMock(side_effect=psycopg2.OperationalError('could not connect'))
        with patch('database.get_connection', get_connection), \
                patch('database.time.sleep'):
            with pytest.raises(psycopg2.OperationalError):
                await database.execute_query("SELECT 1")
        assert get_connection.call_count == 3

    async def test_claim_is_not_retried_on_dropped_connection(self):
        conn, cursor = _connection()
        cursor.fetchall.side_effect = psycopg2.OperationalError('server closed the connection unexpectedly')
        get_connection = MagicMock(return_value=conn)
        with patch('database.get_connection', get_connection), \
                patch('database.return_connection') as returned, \
                patch('database.time.sleep') as sleep:
            with pytest.raises(psycopg2.OperationalError):
                await database.claim_order_for_provisioning(5)

        assert get_connection.call_count == 1
        assert cursor.execute.call_count == 1
        returned.assert_called_once_with(conn, is_broken=True)
        sleep.assert_not_called()

    @pytest.mark.parametrize("write", [
        lambda: database.transition_server_action_request(1, 'pending', 'approved', 'admin-1'),
        lambda: database.update_order_fields(1, {'provisioning_status': 'active'}),
    ])
    async def test_conditional_writes_run_once(self, write):
        get_connection = MagicMock(side_effect=psycopg2.InterfaceError('connection already closed'))
        with patch('database.get_connection', get_connection), patch('database.time.sleep'):
            with pytest.raises(psycopg2.InterfaceError):
                await write()
        assert get_connection.call_count == 1

    async def test_transaction_rolls_back_on_error(self):
        conn, _ = _connection()

        def fail(connection):
            raise ValueError('bad row')

        with patch('database.get_connection', return_value=conn), \
                patch('database.return_connection') as returned:
            with pytest.raises(ValueError):
                await database.run_in_transaction(fail)

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        assert conn.autocommit is True
        returned.assert_called_once_with(conn)

    async def test_update_with_log_is_one_transaction(self):
        conn, cursor = _connection(fetchone={'id': 3, 'password': 'new'})
        with patch('database.get_connection', return_value=conn), patch('database.return_connection'):
            row = await database.update_order_with_log(3, {'password': 'new'}, 'changepassword',
                                                       {'password': '****'}, True)

        assert row == {'id': 3, 'password': 'new'}
        statements = [c.args[0] for c in cursor.execute.call_args_list]
        assert statements[0].startswith('UPDATE orders SET password = %s')
        assert 'INSERT INTO order_logs' in statements[1]
        conn.commit.assert_called_once()


@pytest.mark.asyncio
class TestErrorMapping:

    async def test_duplicate_pending_request_is_conflict(self):
        with patch('database.run_in_transaction',
                   AsyncMock(side_effect=psycopg2.errors.UniqueViolation('duplicate key'))):
            with pytest.raises(ConflictFailed, match='pending restart request'):
                await database.create_server_action_request(1, 'user-1', 'restart', {}, {})

    async def test_health_probe(self):
        with patch('database.execute_query', AsyncMock(return_value=[{'ok': 1}])):
            assert await database.probe_database_health() is True
        with patch('database.execute_query', AsyncMock(side_effect=psycopg2.OperationalError('down'))):
            assert await database.probe_database_health() is False
        with patch('database.execute_query', AsyncMock(side_effect=ValueError('DATABASE_URL missing'))):
            assert await database.probe_database_health() is False

    async def test_claim_passes_force_flag(self):
        execute_returning = AsyncMock(return_value=[])
        with patch('database.execute_returning', execute_returning):
            assert await database.claim_order_for_provisioning(5, force=True) is None
        assert execute_returning.await_args.args[1] == (5, True)

    async def test_order_logs_newest_first(self):
        execute_query = AsyncMock(return_value=[{'id': 2}, {'id': 1}])
        with patch('database.execute_query', execute_query):
            logs = await database.get_order_logs(9, limit=5)
        assert [log['id'] for log in logs] == [2, 1]
        query, params = execute_query.await_args.args
        assert 'ORDER BY created_at DESC' in query
        assert params == (9, 5)
