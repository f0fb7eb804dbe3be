"""
HTTP API for the VPS lifecycle orchestrator
aiohttp server exposing provisioning, service actions, action requests and state sync
"""

import json
import logging
import time
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from database import probe_database_health
from performance_monitor import get_performance_stats
from services.action_executor import ServerActionExecutor, get_action_executor
from services.action_requests import ActionRequestWorkflow, get_action_request_workflow
from services.bulk_provisioning import BulkProvisioningCoordinator, get_bulk_coordinator
from services.errors import OrchestratorError, ValidationFailed
from services.provisioning_orchestrator import ProvisioningOrchestrator, get_provisioning_orchestrator
from state_sync import ServerStateSync, get_state_sync

logger = logging.getLogger(__name__)

# Suppress access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

ERROR_STATUS = {
    'validation_failed': 400,
    'forbidden': 403,
    'not_found': 404,
    'resolution_failed': 404,
    'conflict': 409,
    'provider_rejected': 502,
    'provider_unavailable': 503,
    'internal_error': 500,
}

EXECUTOR_KEY = web.AppKey('executor', ServerActionExecutor)
ORCHESTRATOR_KEY = web.AppKey('orchestrator', ProvisioningOrchestrator)
BULK_KEY = web.AppKey('bulk', BulkProvisioningCoordinator)
WORKFLOW_KEY = web.AppKey('workflow', ActionRequestWorkflow)
STATE_SYNC_KEY = web.AppKey('state_sync', ServerStateSync)

_api_server: Optional[web.AppRunner] = None


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str)

def json_result(result: Dict[str, Any], success_status: int = 200) -> Response:
    """Envelope → response, choosing the HTTP status from error_type on failure"""
    if result.get('success'):
        status = success_status
    else:
        status = ERROR_STATUS.get(result.get('error_type'), 500)
    return web.json_response(result, status=status, dumps=_dumps)

async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationFailed("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return body

def _parse_id(value: Any, name: str) -> int:
    if value is None or value == '':
        raise ValidationFailed(f"{name} is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be an integer")

def _require(value: Any, name: str) -> Any:
    if value is None or value == '':
        raise ValidationFailed(f"{name} is required")
    return value

@web.middleware
async def error_middleware(request: Request, handler):
    """Structured errors for every route; unexpected errors become internal_error/500"""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except OrchestratorError as e:
        return json_result({'success': False, **e.to_dict()})
    except Exception as e:
        logger.exception(f"💥 API: Unhandled error on {request.method} {request.path}: {e}")
        return json_result({'success': False, 'error': 'Internal server error', 'error_type': 'internal_error'})

async def health_handler(request: Request) -> Response:
    """Database, provider configuration, state sync and process stats"""
    db_healthy = await probe_database_health()
    executor = request.app[EXECUTOR_KEY]
    response_data = {
        'status': 'healthy' if db_healthy else 'degraded',
        'service': 'vps_orchestrator',
        'timestamp': time.time(),
        'checks': {
            'database': db_healthy,
            'hostycare_configured': executor.hostycare.is_configured,
            'virtualizor_panels': [panel.name for panel in executor.panels],
            'state_sync': request.app[STATE_SYNC_KEY].get_sync_stats(),
            'performance': get_performance_stats(),
        },
    }
    return web.json_response(response_data, status=200 if db_healthy else 503, dumps=_dumps)

async def provision_handler(request: Request) -> Response:
    """{orderId, force?} for one order or {orderIds: [...], force?} for a batch"""
    body = await _read_json(request)
    force = bool(body.get('force', False))

    order_ids = body.get('orderIds')
    if order_ids is not None:
        if not isinstance(order_ids, list) or not order_ids:
            raise ValidationFailed("orderIds must be a non-empty list")
        ids = [_parse_id(value, 'orderIds[]') for value in order_ids]
        summary = await request.app[BULK_KEY].provision_orders(ids, force=force)
        return web.json_response(summary, dumps=_dumps)

    order_id = _parse_id(body.get('orderId'), 'orderId')
    return json_result(await request.app[ORCHESTRATOR_KEY].provision_order(order_id, force=force))

async def provisioning_status_handler(request: Request) -> Response:
    order_id = _parse_id(request.query.get('orderId'), 'orderId')
    return json_result(await request.app[ORCHESTRATOR_KEY].get_provisioning_status(order_id))

async def provisionable_orders_handler(request: Request) -> Response:
    orders = await request.app[BULK_KEY].list_provisionable_orders()
    return web.json_response({'success': True, 'count': len(orders), 'orders': orders}, dumps=_dumps)

async def service_action_handler(request: Request) -> Response:
    """{orderId, action, templateId?, newPassword?}"""
    body = await _read_json(request)
    order_id = _parse_id(body.get('orderId'), 'orderId')
    action = _require(body.get('action'), 'action')
    payload = body.get('payload') if isinstance(body.get('payload'), dict) else {}
    result = await request.app[EXECUTOR_KEY].execute(
        order_id,
        action,
        template_id=body.get('templateId') or payload.get('templateId'),
        new_password=body.get('newPassword') or payload.get('password'),
    )
    return json_result(result)

async def templates_handler(request: Request) -> Response:
    order_id = _parse_id(request.query.get('orderId'), 'orderId')
    return json_result(await request.app[EXECUTOR_KEY].execute(order_id, 'templates'))

async def credentials_handler(request: Request) -> Response:
    """?orderId=&userId= (userId optional for admin callers)"""
    order_id = _parse_id(request.query.get('orderId'), 'orderId')
    return json_result(await request.app[EXECUTOR_KEY].get_credentials(order_id, request.query.get('userId')))

async def action_request_handler(request: Request) -> Response:
    """{orderId, userId, action, payload?, customer?}"""
    body = await _read_json(request)
    order_id = _parse_id(body.get('orderId'), 'orderId')
    user_id = _require(body.get('userId'), 'userId')
    action = _require(body.get('action'), 'action')
    payload = body.get('payload') if isinstance(body.get('payload'), dict) else {}
    customer = body.get('customer') if isinstance(body.get('customer'), dict) else None
    result = await request.app[WORKFLOW_KEY].submit_request(order_id, str(user_id), action, payload, customer)
    return json_result(result, success_status=201)

async def process_request_handler(request: Request) -> Response:
    """{requestId, adminId, decision: approve|reject, adminNotes?}"""
    body = await _read_json(request)
    request_id = _parse_id(body.get('requestId'), 'requestId')
    admin_id = _require(body.get('adminId'), 'adminId')
    decision = _require(body.get('decision') or body.get('action'), 'decision')
    result = await request.app[WORKFLOW_KEY].process_request(request_id, str(admin_id), decision, body.get('adminNotes'))
    return json_result(result)

async def pending_requests_handler(request: Request) -> Response:
    return json_result(await request.app[WORKFLOW_KEY].list_pending_requests())

async def request_status_handler(request: Request) -> Response:
    order_id = _parse_id(request.query.get('orderId'), 'orderId')
    user_id = _require(request.query.get('userId'), 'userId')
    return json_result(await request.app[WORKFLOW_KEY].get_request_status(order_id, user_id))

async def state_sync_handler(request: Request) -> Response:
    """{orderId?}: sync one order, or run one batch when omitted"""
    body = await _read_json(request) if request.can_read_body else {}
    state_sync = request.app[STATE_SYNC_KEY]
    if body.get('orderId') is not None:
        result = await state_sync.sync_order(_parse_id(body['orderId'], 'orderId'))
        return json_result({'success': True, 'result': result})
    summary = await state_sync.sync_all()
    if summary.get('status') == 'disabled':
        return json_result({'success': False, 'error': 'State sync is disabled', 'error_type': 'conflict'})
    return json_result({'success': True, **summary})

def create_app(executor: Optional[ServerActionExecutor] = None,
               orchestrator: Optional[ProvisioningOrchestrator] = None,
               bulk: Optional[BulkProvisioningCoordinator] = None,
               workflow: Optional[ActionRequestWorkflow] = None,
               state_sync: Optional[ServerStateSync] = None) -> web.Application:
    """Build the application; services default to the global instances"""
    app = web.Application(middlewares=[error_middleware])
    app[EXECUTOR_KEY] = executor or get_action_executor()
    app[ORCHESTRATOR_KEY] = orchestrator or get_provisioning_orchestrator()
    app[BULK_KEY] = bulk or get_bulk_coordinator()
    app[WORKFLOW_KEY] = workflow or get_action_request_workflow()
    app[STATE_SYNC_KEY] = state_sync or get_state_sync()

    app.router.add_get('/health', health_handler)
    app.router.add_post('/api/provision', provision_handler)
    app.router.add_get('/api/provisioning-status', provisioning_status_handler)
    app.router.add_get('/api/provisionable-orders', provisionable_orders_handler)
    app.router.add_post('/api/service-action', service_action_handler)
    app.router.add_get('/api/service-action/templates', templates_handler)
    app.router.add_get('/api/service-action/credentials', credentials_handler)
    app.router.add_post('/api/server-actions/request', action_request_handler)
    app.router.add_post('/api/server-actions/process', process_request_handler)
    app.router.add_get('/api/server-actions/pending', pending_requests_handler)
    app.router.add_get('/api/server-actions/status', request_status_handler)
    app.router.add_post('/api/state-sync', state_sync_handler)
    return app

async def start_api_server(port: int = 5000) -> web.AppRunner:
    """Start the aiohttp server in the current event loop"""
    global _api_server

    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()
    _api_server = runner

    logger.info(f"✅ API server started on http://0.0.0.0:{port}")
    logger.info("🔗 Health check endpoint: /health")
    return runner

async def stop_api_server():
    global _api_server
    if _api_server:
        await _api_server.cleanup()
        _api_server = None
    logger.info("✅ API server stopped")
