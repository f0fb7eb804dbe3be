"""
Shared test fixtures for the VPS orchestrator test suite
Provides an in-memory order store, provider mocks and order factories
"""

import os
import itertools
import logging
from contextlib import ExitStack
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import patch

import httpx
import pytest
import factory
from factory.declarations import Sequence

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

# Test environment configuration
test_env_vars = {
    'TEST_MODE': '1',  # CRITICAL: Prevent live credential usage during tests
    'PROVISION_RETRY_DELAY': '0',
    'STATE_SYNC_INTERVAL': '10',
}
for key, value in test_env_vars.items():
    os.environ[key] = value
os.environ.pop('ORDER_PASSWORD_KEY', None)

from services.errors import ConflictFailed
from services.virtualizor import VirtualizorPanel


# Test data factories
class OrderFactory(factory.Factory):  # type: ignore[misc]
    """Factory for creating test order rows"""
    class Meta:  # type: ignore[misc]
        model = dict

    id = Sequence(lambda n: 1000 + n)
    user_id = 'user-1'
    product_name = 'Windows VPS'
    product_type = 'vps'
    memory = '4GB'
    status = 'paid'
    provider = 'hostycare'
    provisioning_status = 'pending'
    ip_address = None
    hostname = None
    username = None
    password = None
    os = None
    hostycare_service_id = None
    hostycare_product_id = None
    provisioning_config = factory.LazyFunction(
        lambda: {'memory_options': {'4GB': {'hostycareProductId': '77', 'fields': {'os': 'win2022'}}}}
    )
    auto_provisioned = False
    provisioning_error = None
    server_details = None
    last_action = None
    last_action_time = None
    last_sync_time = None
    expiry_date = None


class ActiveVpsOrderFactory(OrderFactory):
    """Provisioned order reachable through the hypervisor panels"""
    status = 'active'
    provisioning_status = 'active'
    ip_address = '1.2.3.4'
    hostname = 'vps1.example.com'
    username = 'root'
    auto_provisioned = True


class FakeOrderStore:
    """In-memory stand-in for the order, request and log tables"""

    PATCH_TARGETS = {
        'services.action_executor': ('get_order', 'append_order_log', 'update_order_with_log'),
        'state_sync': ('get_order', 'get_orders_for_state_sync', 'update_order_fields'),
        'services.provisioning_orchestrator': ('claim_order_for_provisioning', 'get_order', 'update_order_with_log'),
        'services.bulk_provisioning': ('get_failed_orders', 'get_orders_by_ids', 'get_provisionable_orders'),
        'services.action_requests': (
            'create_server_action_request', 'get_order', 'get_pending_server_action_requests',
            'get_server_action_request', 'get_server_action_requests_for_order', 'transition_server_action_request',
        ),
        'action_logger': ('insert_action_log',),
    }

    def __init__(self):
        self.orders: Dict[int, Dict[str, Any]] = {}
        self.order_logs: List[Dict[str, Any]] = []
        self.requests: Dict[int, Dict[str, Any]] = {}
        self.action_logs: List[Dict[str, Any]] = []
        self._request_ids = itertools.count(1)
        self._log_ids = itertools.count(1)

    def add(self, order: Dict[str, Any]) -> Dict[str, Any]:
        self.orders[order['id']] = dict(order)
        return self.orders[order['id']]

    def logs_for(self, order_id: int) -> List[Dict[str, Any]]:
        return [log for log in self.order_logs if log['order_id'] == order_id]

    # orders

    async def get_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        order = self.orders.get(order_id)
        return dict(order) if order else None

    async def get_orders_by_ids(self, order_ids: List[int]) -> List[Dict[str, Any]]:
        return [dict(self.orders[oid]) for oid in sorted(set(order_ids)) if oid in self.orders]

    async def update_order_fields(self, order_id: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if order_id not in self.orders:
            return None
        self.orders[order_id].update(fields)
        return dict(self.orders[order_id])

    async def append_order_log(self, order_id: int, action: str, details: Optional[Dict[str, Any]], success: bool) -> bool:
        self.order_logs.append({'order_id': order_id, 'action': action, 'details': details or {}, 'success': success})
        return True

    async def update_order_with_log(self, order_id: int, fields: Dict[str, Any], action: str,
                                    details: Optional[Dict[str, Any]], success: bool) -> Optional[Dict[str, Any]]:
        row = await self.update_order_fields(order_id, fields)
        await self.append_order_log(order_id, action, details, success)
        return row

    async def claim_order_for_provisioning(self, order_id: int, force: bool = False) -> Optional[Dict[str, Any]]:
        order = self.orders.get(order_id)
        if not order or order['status'] not in ('paid', 'confirmed', 'active'):
            return None
        if order['provisioning_status'] == 'provisioning':
            return None
        if order['provisioning_status'] not in ('pending', 'failed') and not force:
            return None
        order.update({'provisioning_status': 'provisioning', 'provisioning_error': None})
        return dict(order)

    async def get_provisionable_orders(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = [
            o for o in self.orders.values()
            if o['status'] in ('paid', 'confirmed', 'active')
            and (not o.get('auto_provisioned') or o['provisioning_status'] == 'failed')
            and o['provisioning_status'] not in ('provisioning', 'active', 'terminated')
        ]
        return [dict(o) for o in rows[:limit]]

    async def get_failed_orders(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = [o for o in self.orders.values() if o['provisioning_status'] == 'failed']
        return [dict(o) for o in rows[:limit]]

    async def get_orders_for_state_sync(self, limit: int = 25) -> List[Dict[str, Any]]:
        rows = [
            o for o in self.orders.values()
            if o['provisioning_status'] in ('active', 'provisioning', 'suspended')
            and (o.get('hostycare_service_id') or o.get('ip_address'))
        ]
        return [dict(o) for o in rows[:limit]]

    # server action requests

    async def create_server_action_request(self, order_id: int, user_id: str, action: str,
                                           payload: Dict[str, Any], order_snapshot: Dict[str, Any]) -> Dict[str, Any]:
        for existing in self.requests.values():
            if existing['order_id'] == order_id and existing['action'] == action and existing['status'] == 'pending':
                raise ConflictFailed(f"A pending {action} request already exists for this order")
        request_id = next(self._request_ids)
        self.requests[request_id] = {
            'id': request_id, 'order_id': order_id, 'user_id': user_id, 'action': action,
            'status': 'pending', 'payload': dict(payload or {}), 'order_snapshot': dict(order_snapshot or {}),
            'admin_notes': None, 'processed_by': None, 'processed_at': None, 'created_at': datetime.utcnow(),
        }
        return dict(self.requests[request_id])

    async def get_server_action_request(self, request_id: int) -> Optional[Dict[str, Any]]:
        row = self.requests.get(request_id)
        return dict(row) if row else None

    async def get_pending_server_action_requests(self, limit: int = 100) -> List[Dict[str, Any]]:
        return [dict(r) for r in self.requests.values() if r['status'] == 'pending'][:limit]

    async def get_server_action_requests_for_order(self, order_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        rows = [dict(r) for r in self.requests.values() if r['order_id'] == order_id]
        return sorted(rows, key=lambda r: r['id'], reverse=True)[:limit]

    async def transition_server_action_request(self, request_id: int, from_status: str, to_status: str,
                                               processed_by: Optional[str] = None,
                                               admin_notes: Optional[str] = None) -> Optional[Dict[str, Any]]:
        row = self.requests.get(request_id)
        if not row or row['status'] != from_status:
            return None
        if from_status == 'pending':
            row['processed_at'] = datetime.utcnow()
        row['status'] = to_status
        if processed_by is not None:
            row['processed_by'] = processed_by
        if admin_notes is not None:
            row['admin_notes'] = admin_notes
        return dict(row)

    # action logs

    async def insert_action_log(self, entry: Dict[str, Any]) -> int:
        log_id = next(self._log_ids)
        self.action_logs.append({'id': log_id, **entry})
        return log_id


@pytest.fixture
def order_store():
    """FakeOrderStore wired into every module that touches the database"""
    store = FakeOrderStore()
    with ExitStack() as stack:
        for module, names in FakeOrderStore.PATCH_TARGETS.items():
            for name in names:
                stack.enter_context(patch(f"{module}.{name}", getattr(store, name)))
        yield store


def panel_handler(vms: List[Dict[str, Any]], calls: Optional[List[httpx.Request]] = None,
                  templates: Optional[Dict[str, Any]] = None,
                  status: Optional[Dict[str, Any]] = None) -> Callable[[httpx.Request], httpx.Response]:
    """httpx.MockTransport handler emulating a Virtualizor end-user API"""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        act = request.url.params.get('act')
        if act == 'listvs':
            page = int(request.url.params.get('page', 1))
            return httpx.Response(200, json={'vs': {vm['vpsid']: vm for vm in vms} if page == 1 else {}})
        if act in ('start', 'stop', 'restart'):
            return httpx.Response(200, json={'done': 1, 'output': f'{act} ok'})
        if act == 'vpsmanage':
            return httpx.Response(200, json=status or {'info': {'status': 1}})
        if act == 'ostemplate':
            if request.method == 'POST':
                return httpx.Response(200, json={'done': 1, 'newos': 'reinstalling'})
            return httpx.Response(200, json=templates or {'oslist': {}})
        if act == 'changepassword':
            return httpx.Response(200, json={'done': 1})
        return httpx.Response(404, json={'error': f'unknown act {act}'})

    return handler


def make_panel(name: str, vms: List[Dict[str, Any]], calls: Optional[List[httpx.Request]] = None,
               **handler_kwargs) -> VirtualizorPanel:
    return VirtualizorPanel(
        name=name,
        host=f'{name}.panel.test',
        api_key='key',
        api_pass='pass',
        transport=httpx.MockTransport(panel_handler(vms, calls, **handler_kwargs)),
    )


@pytest.fixture
def panel_factory():
    """Build VirtualizorPanel clients backed by an in-process mock API"""
    return make_panel


@pytest.fixture
def order_factory():
    return OrderFactory


@pytest.fixture
def active_order_factory():
    return ActiveVpsOrderFactory


@pytest.fixture
def vps_order():
    return ActiveVpsOrderFactory()
