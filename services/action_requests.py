"""
Server Action Request approval workflow

Customers request sensitive actions; admins approve or reject them.
pending → approved → completed, or pending → rejected.
At most one pending request per (order, action) is enforced by a partial unique index.
"""

import logging
from typing import Any, Dict, Optional

from action_logger import ActionLogger, scrub
from database import (
    REQUEST_ACTIONS, create_server_action_request, get_order, get_pending_server_action_requests,
    get_server_action_request, get_server_action_requests_for_order, transition_server_action_request
)
from services.action_executor import ServerActionExecutor, get_action_executor, password_policy_violation
from services.errors import ConflictFailed, NotFound, OrchestratorError, PermissionDenied, ValidationFailed

logger = logging.getLogger(__name__)

REQUEST_ACTION_ALIASES = {'reboot': 'restart'}
DECISIONS = {'approve': 'approved', 'reject': 'rejected'}


def build_order_snapshot(order: Dict[str, Any], customer: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Display fields copied at request time so admins can review without a join"""
    customer = customer or {}
    return {
        'productName': order.get('product_name'),
        'ipAddress': order.get('ip_address') or 'Not assigned',
        'customerEmail': customer.get('email') or 'Unknown',
        'customerName': customer.get('name') or 'Unknown',
        'os': order.get('os') or 'Unknown',
        'memory': order.get('memory') or 'Unknown',
    }


def serialize_request(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'requestId': row['id'],
        'orderId': row['order_id'],
        'userId': row['user_id'],
        'action': row['action'],
        'status': row['status'],
        'payload': scrub(row.get('payload') or {}),
        'orderSnapshot': row.get('order_snapshot') or {},
        'adminNotes': row.get('admin_notes'),
        'processedBy': row.get('processed_by'),
        'processedAt': row['processed_at'].isoformat() if row.get('processed_at') else None,
        'requestedAt': row['created_at'].isoformat() if row.get('created_at') else None,
    }


class ActionRequestWorkflow:
    """Human-in-the-loop gate for customer-initiated server actions"""

    def __init__(self, executor: Optional[ServerActionExecutor] = None):
        self._executor = executor

    @property
    def executor(self) -> ServerActionExecutor:
        if self._executor is None:
            self._executor = get_action_executor()
        return self._executor

    async def submit_request(self, order_id: int, user_id: str, action: str,
                             payload: Optional[Dict[str, Any]] = None,
                             customer: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create a pending request

        Returns:
            {'success': True, 'requestId', 'request'} or a structured failure
            (conflict when a pending request for the same action exists)
        """
        try:
            action = REQUEST_ACTION_ALIASES.get((action or '').strip().lower(), (action or '').strip().lower())
            if action not in REQUEST_ACTIONS:
                raise ValidationFailed(f"Invalid action. Must be one of: {', '.join(REQUEST_ACTIONS)}")

            order = await get_order(order_id)
            if not order:
                raise NotFound(f"Order {order_id} not found")
            if str(order.get('user_id')) != str(user_id):
                raise PermissionDenied("Unauthorized to request actions for this order")

            payload = dict(payload or {})
            if action == 'changepassword':
                violation = password_policy_violation(payload.get('newPassword') or payload.get('password'))
                if violation:
                    raise ValidationFailed(violation)

            row = await create_server_action_request(
                order_id, str(user_id), action, payload, build_order_snapshot(order, customer)
            )
        except OrchestratorError as e:
            logger.warning(f"⚠️ ACTION REQUEST: {action} on order {order_id} rejected: {e.message}")
            return {'success': False, **e.to_dict()}

        logger.info(f"📝 ACTION REQUEST: Created request {row['id']} for order {order_id}, action: {action}")
        return {
            'success': True,
            'requestId': row['id'],
            'request': serialize_request(row),
            'message': 'Action request submitted successfully. An admin will review it shortly.',
        }

    async def process_request(self, request_id: int, admin_id: str, decision: str,
                              admin_notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Approve or reject a pending request

        Approval runs the action synchronously. The request ends 'completed' once the
        action was attempted; whether the action itself succeeded is reported separately
        in 'actionResult' and recorded in admin_notes and the order log.
        """
        try:
            new_status = DECISIONS.get((decision or '').strip().lower())
            if new_status is None:
                raise ValidationFailed('Invalid decision. Must be "approve" or "reject"')

            request = await get_server_action_request(request_id)
            if not request:
                raise NotFound(f"Request {request_id} not found")
            if request['status'] != 'pending':
                raise ConflictFailed(f"Request already {request['status']}")

            decided = await transition_server_action_request(
                request_id, 'pending', new_status, processed_by=str(admin_id), admin_notes=admin_notes
            )
            if not decided:
                # Another admin got there first
                current = await get_server_action_request(request_id)
                raise ConflictFailed(f"Request already {current['status'] if current else 'processed'}")
        except OrchestratorError as e:
            logger.warning(f"⚠️ ACTION REQUEST: Processing request {request_id} failed: {e.message}")
            return {'success': False, **e.to_dict()}

        logger.info(f"✅ ACTION REQUEST: Request {request_id} {new_status} by admin {admin_id}")
        if new_status == 'rejected':
            return {'success': True, 'request': serialize_request(decided), 'message': 'Request rejected successfully'}

        action_log = ActionLogger('action_request', order_id=decided['order_id'],
                                  request_id=request_id, action=decided['action'], admin_id=str(admin_id))
        payload = decided.get('payload') or {}
        try:
            action_result = await self.executor.execute(
                decided['order_id'],
                decided['action'],
                template_id=payload.get('templateId') or payload.get('template'),
                new_password=payload.get('newPassword') or payload.get('password'),
            )
        except Exception as e:
            # The attempt still happened; record it so the request does not stay approved forever
            logger.exception(f"💥 ACTION REQUEST: Executing request {request_id} raised: {e}")
            action_result = {'success': False, 'error': str(e), 'error_type': 'internal_error'}

        if action_result.get('success'):
            outcome = f"Action {decided['action']} executed successfully"
            action_log.success(outcome)
        else:
            outcome = f"Action {decided['action']} failed: {action_result.get('error')}"
            action_log.error(outcome, {'error_type': action_result.get('error_type')})

        notes = f"{admin_notes}\n{outcome}" if admin_notes else outcome
        completed = await transition_server_action_request(request_id, 'approved', 'completed', admin_notes=notes)
        await action_log.finalize(bool(action_result.get('success')),
                                  None if action_result.get('success') else action_result.get('error'))

        logger.info(f"🏁 ACTION REQUEST: Request {request_id} completed - {outcome}")
        return {
            'success': True,
            'request': serialize_request(completed or decided),
            'actionResult': action_result,
            'message': 'Request approved and executed',
        }

    async def list_pending_requests(self, limit: int = 100) -> Dict[str, Any]:
        rows = await get_pending_server_action_requests(limit)
        return {'success': True, 'count': len(rows), 'requests': [serialize_request(r) for r in rows]}

    async def get_request_status(self, order_id: int, user_id: str) -> Dict[str, Any]:
        """Latest pending request for an order plus recent history, scoped to the owner"""
        order = await get_order(order_id)
        if not order:
            return {'success': False, **NotFound(f"Order {order_id} not found").to_dict()}
        if str(order.get('user_id')) != str(user_id):
            return {'success': False, **PermissionDenied("Unauthorized to view requests for this order").to_dict()}

        rows = await get_server_action_requests_for_order(order_id)
        pending = next((r for r in rows if r['status'] == 'pending'), None)
        return {
            'success': True,
            'hasRequest': pending is not None,
            'request': serialize_request(pending) if pending else None,
            'history': [serialize_request(r) for r in rows],
        }


# Global instance
_workflow: Optional[ActionRequestWorkflow] = None

def get_action_request_workflow() -> ActionRequestWorkflow:
    global _workflow
    if _workflow is None:
        _workflow = ActionRequestWorkflow()
    return _workflow
