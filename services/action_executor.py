"""
Server Action Executor - lifecycle operations on a provisioned VPS

Per call: validate the order is VPS-class → pick the provider path → dispatch →
normalize and persist → append one order log entry → follow-up state sync.

Billing-provider path (Hostycare) is used for start/stop/restart/status/changepassword
when the order belongs to Hostycare and carries a service id. Reinstall and template
listing always go through the hypervisor panels, located by the VPS resolver from the
order's IP.
"""

import re
import string
import secrets
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from action_logger import ActionLogger, mask_secret
from database import append_order_log, get_order, update_order_with_log
from performance_monitor import OperationTimer
from services.errors import NotFound, OrchestratorError, PermissionDenied, ValidationFailed
from services.hostycare import HostycareService, get_hostycare_service, hostycare_service_id
from services.secret_store import get_secret_store
from services.virtualizor import VirtualizorPanel, get_default_panels
from services.vps_resolver import ResolvedVPS, resolve_vps
from state_sync import ServerStateSync, get_state_sync
from utils.environment import get_env_bool

logger = logging.getLogger(__name__)

PASSWORD_SYMBOLS = '!@#$%^&*-_=+'
MIN_PASSWORD_LENGTH = 20

ACTION_ALIASES = {'reboot': 'restart', 'format': 'reinstall'}
SUPPORTED_ACTIONS = ('start', 'stop', 'restart', 'status', 'reinstall', 'changepassword', 'templates')
STATE_CHANGING_ACTIONS = ('start', 'stop', 'restart', 'reinstall', 'changepassword')
PANEL_ONLY_ACTIONS = ('reinstall', 'templates')

VPS_PRODUCT_TYPES = {'vps', 'vds', 'rdp', 'cloud', 'server', 'dedicated'}
VPS_NAME_KEYWORDS = ('vps', 'rdp', 'windows', 'linux', 'server', 'cloud', 'vds', 'kvm')

VIRT_TYPES = {'kvm', 'openvz', 'xen', 'xenhvm', 'xcp', 'xcphvm', 'lxc', 'vzk', 'vzo', 'proxk', 'proxl', 'proxo'}


def generate_secure_password(length: int = MIN_PASSWORD_LENGTH) -> str:
    """
    Random password with at least one uppercase, lowercase, digit and symbol

    Args:
        length: total length, never below MIN_PASSWORD_LENGTH
    """
    length = max(length, MIN_PASSWORD_LENGTH)
    alphabet = string.ascii_letters + string.digits + PASSWORD_SYMBOLS
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(PASSWORD_SYMBOLS),
    ]
    rest = [secrets.choice(alphabet) for _ in range(length - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return ''.join(chars)


def password_policy_violation(password: Optional[str]) -> Optional[str]:
    """Reason the password fails the policy, or None if it passes"""
    if not password:
        return "password is required"
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"password must be at least {MIN_PASSWORD_LENGTH} characters"
    if not re.search(r'[A-Z]', password):
        return "password must contain an uppercase letter"
    if not re.search(r'[a-z]', password):
        return "password must contain a lowercase letter"
    if not re.search(r'\d', password):
        return "password must contain a digit"
    if not any(c in PASSWORD_SYMBOLS for c in password):
        return f"password must contain one of {PASSWORD_SYMBOLS}"
    return None


def is_vps_order(order: Dict[str, Any]) -> bool:
    """
    Soft check that an order is for a virtual server

    Explicit product_type wins; otherwise a product-name keyword match or an assigned IP.
    """
    product_type = (order.get('product_type') or '').strip().lower()
    if product_type:
        return product_type in VPS_PRODUCT_TYPES
    name = (order.get('product_name') or '').lower()
    if any(keyword in name for keyword in VPS_NAME_KEYWORDS):
        return True
    ip = order.get('ip_address')
    return bool(ip and ip != 'pending' and not ip.startswith('Pending'))


def normalize_action(action: Optional[str]) -> str:
    action = (action or '').strip().lower()
    action = ACTION_ALIASES.get(action, action)
    if action not in SUPPORTED_ACTIONS:
        raise ValidationFailed(f"Unsupported action '{action}'. Supported: {', '.join(SUPPORTED_ACTIONS)}")
    return action


def _vps_id_for_response(vpsid: str):
    return int(vpsid) if str(vpsid).isdigit() else vpsid


def group_templates(raw: Dict[str, Any], vm_virt: Optional[str]) -> Dict[str, List[Dict[str, Any]]]:
    """
    Flatten a panel OS template catalog into {distribution: [template, ...]}

    Accepts oslist shaped as {virt: {distro: {id: tpl}}}, {distro: {id: tpl}} or a flat list.
    """
    vm_virt = (vm_virt or '').lower()
    oslist = raw.get('oslist') or raw.get('templates') or raw.get('os') or {}
    grouped: Dict[str, List[Dict[str, Any]]] = {}

    def add(template_id: Any, tpl: Any, distro: Optional[str], virt: Optional[str]):
        if isinstance(tpl, dict):
            name = tpl.get('name') or tpl.get('filename') or str(template_id)
            template_id = tpl.get('osid') or tpl.get('id') or template_id
            distro = distro or tpl.get('distro') or tpl.get('type') or 'other'
            virt = virt or tpl.get('virt') or tpl.get('type_virt') or ''
        else:
            name = str(tpl)
            distro = distro or 'other'
            virt = virt or ''
        grouped.setdefault(str(distro).lower(), []).append({
            'id': str(template_id),
            'name': name,
            'virt': str(virt).lower(),
            'applicable': bool(vm_virt) and str(virt).lower() == vm_virt,
        })

    if isinstance(oslist, list):
        for tpl in oslist:
            add(None, tpl, None, None)
    elif isinstance(oslist, dict):
        for key, value in oslist.items():
            if not isinstance(value, dict):
                add(key, value, None, None)
            elif str(key).lower() in VIRT_TYPES:
                for distro, templates in value.items():
                    if isinstance(templates, dict):
                        for template_id, tpl in templates.items():
                            add(template_id, tpl, distro, key)
            else:
                for template_id, tpl in value.items():
                    add(template_id, tpl, key, None)

    for templates in grouped.values():
        templates.sort(key=lambda t: (not t['applicable'], t['name']))
    return grouped


class ServerActionExecutor:
    """Dispatches lifecycle actions for one order at a time"""

    def __init__(self, hostycare: Optional[HostycareService] = None,
                 panels: Optional[Sequence[VirtualizorPanel]] = None,
                 state_sync: Optional[ServerStateSync] = None,
                 exhaustive_search: Optional[bool] = None):
        self.hostycare = hostycare or get_hostycare_service()
        self.panels = list(panels) if panels is not None else get_default_panels()
        self.state_sync = state_sync or get_state_sync()
        self.exhaustive_search = (exhaustive_search if exhaustive_search is not None
                                  else get_env_bool('RESOLVER_EXHAUSTIVE_SEARCH', False))

    async def execute(self, order_id: int, action: str, template_id: Optional[str] = None,
                      new_password: Optional[str] = None) -> Dict[str, Any]:
        """
        Run one action against an order's server

        Returns:
            {'success': True, 'action', 'result'} or
            {'success': False, 'action', 'error', 'error_type', ...}
        """
        try:
            action = normalize_action(action)
            order = await get_order(order_id)
            if not order:
                raise NotFound(f"Order {order_id} not found")
            if not is_vps_order(order):
                raise ValidationFailed(f"Order {order_id} is not a VPS order")
        except OrchestratorError as e:
            logger.warning(f"⚠️ SERVICE ACTION: Rejected {action} on order {order_id}: {e.message}")
            return {'success': False, 'action': action, **e.to_dict()}

        action_log = ActionLogger('service_action', order_id=order_id, action=action,
                                  provider=order.get('provider'), ip_address=order.get('ip_address'),
                                  service_id=order.get('hostycare_service_id'))
        action_log.info(f"Starting {action} on order {order_id}")
        logger.info(f"🔧 SERVICE ACTION: {action} on order {order_id} (ip={order.get('ip_address')})")

        try:
            with OperationTimer(f"service_action_{action}", log_result=False) as timer:
                result = await self._dispatch(order, action, template_id, new_password, action_log)
        except OrchestratorError as e:
            logger.error(f"❌ SERVICE ACTION: {action} failed for order {order_id} after {timer.duration_ms:.0f}ms: {e.message}")
            action_log.error(f"{action} failed", {'error_type': e.kind, 'duration_ms': round(timer.duration_ms, 2)})
            if action in STATE_CHANGING_ACTIONS:
                await append_order_log(order_id, action, {'error': e.message, 'error_type': e.kind}, False)
            await action_log.finalize(False, e.message)
            return {'success': False, 'action': action, **e.to_dict()}
        except Exception as e:
            logger.exception(f"❌ SERVICE ACTION: Unexpected error during {action} on order {order_id}: {e}")
            action_log.error(f"{action} crashed", {'error_type': type(e).__name__})
            await action_log.finalize(False, str(e))
            raise

        action_log.success(f"{action} succeeded", {'duration_ms': round(timer.duration_ms, 2)})
        await action_log.finalize(True)
        logger.info(f"✅ SERVICE ACTION: {action} on order {order_id} succeeded in {timer.duration_ms:.0f}ms")

        if action in STATE_CHANGING_ACTIONS:
            await self._follow_up_sync(order_id)

        return {'success': True, 'action': action, 'result': result}

    async def _dispatch(self, order: Dict[str, Any], action: str, template_id: Optional[str],
                        new_password: Optional[str], action_log: ActionLogger) -> Dict[str, Any]:
        if action == 'status':
            return await self._status(order, action_log)
        if action == 'templates':
            return await self._templates(order, action_log)
        if action == 'reinstall':
            return await self._reinstall(order, template_id, new_password, action_log)
        if action == 'changepassword':
            return await self._change_password(order, new_password, action_log)
        return await self._power(order, action, action_log)

    async def _resolve(self, order: Dict[str, Any], action_log: ActionLogger) -> ResolvedVPS:
        ip = order.get('ip_address')
        if not ip or ip == 'pending' or ip.startswith('Pending'):
            raise ValidationFailed(f"Order {order['id']} has no IP address assigned")
        with OperationTimer("vps_resolve", log_result=False) as timer:
            resolved = await resolve_vps(self.panels, ip, order.get('hostname'), exhaustive=self.exhaustive_search)
        action_log.info("Resolved VPS", {'panel': resolved.panel.name, 'vpsid': resolved.vpsid,
                                         'duration_ms': round(timer.duration_ms, 2)})
        return resolved

    async def _call_provider(self, action_log: ActionLogger, provider: str, api_called: str, call):
        """Await a provider call, recording outcome and duration in the action log"""
        with OperationTimer(f"{provider}_{api_called}", log_result=False) as timer:
            try:
                result = await call
            except OrchestratorError as e:
                action_log.set_provider_result(provider, api_called, False, error=e.message,
                                               duration_ms=timer.duration_ms)
                raise
        action_log.set_provider_result(provider, api_called, True, result=result, duration_ms=timer.duration_ms)
        return result

    async def _power(self, order: Dict[str, Any], action: str, action_log: ActionLogger) -> Dict[str, Any]:
        service_id = hostycare_service_id(order)
        if service_id:
            method = {'start': self.hostycare.start, 'stop': self.hostycare.stop, 'restart': self.hostycare.reboot}[action]
            raw = await self._call_provider(action_log, 'hostycare', action, method(service_id))
            result = {'provider': 'hostycare', 'serviceId': service_id, 'raw': raw}
        else:
            resolved = await self._resolve(order, action_log)
            panel = resolved.panel
            method = {'start': panel.start, 'stop': panel.stop, 'restart': panel.reboot}[action]
            raw = await self._call_provider(action_log, 'virtualizor', action, method(resolved.vpsid))
            result = {'provider': 'virtualizor', 'panel': panel.name,
                      'vpsId': _vps_id_for_response(resolved.vpsid), 'raw': raw}

        await update_order_with_log(
            order['id'],
            {'last_action': action, 'last_action_time': datetime.utcnow()},
            action,
            {k: v for k, v in result.items() if k != 'raw'},
            True,
        )
        return result

    async def _status(self, order: Dict[str, Any], action_log: ActionLogger) -> Dict[str, Any]:
        service_id = hostycare_service_id(order)
        if service_id:
            raw = await self._call_provider(action_log, 'hostycare', 'get_status', self.hostycare.get_status(service_id))
            details, info = raw.get('details'), raw.get('info')
        else:
            resolved = await self._resolve(order, action_log)
            details = await self._call_provider(action_log, 'virtualizor', 'vpsmanage',
                                                resolved.panel.get_status(resolved.vpsid))
            info = None

        applied = await self.state_sync.apply_snapshot(order, details, info)
        return {
            'powerState': applied['powerState'],
            'provisioningStatus': applied['provisioningStatus'],
            'raw': {'details': details, 'info': info},
        }

    async def _templates(self, order: Dict[str, Any], action_log: ActionLogger) -> Dict[str, Any]:
        resolved = await self._resolve(order, action_log)
        raw = await self._call_provider(action_log, 'virtualizor', 'ostemplate',
                                        resolved.panel.get_templates(resolved.vpsid))
        vm_virt = resolved.vm.virt or (raw.get('vps') or {}).get('virt') or ''
        return {
            'vpsId': _vps_id_for_response(resolved.vpsid),
            'panel': resolved.panel.name,
            'virt': vm_virt,
            'distributions': group_templates(raw, vm_virt),
        }

    async def _reinstall(self, order: Dict[str, Any], template_id: Optional[str],
                         new_password: Optional[str], action_log: ActionLogger) -> Dict[str, Any]:
        if not template_id:
            raise ValidationFailed("templateId is required for reinstall")
        template_id = str(template_id)

        if new_password:
            violation = password_policy_violation(new_password)
            if violation:
                raise ValidationFailed(violation)
            password = new_password
        else:
            password = generate_secure_password()
            action_log.info("Generated reinstall password", {'password': password})

        resolved = await self._resolve(order, action_log)
        raw = await self._call_provider(action_log, 'virtualizor', 'reinstall',
                                        resolved.panel.reinstall(resolved.vpsid, template_id, password))

        vps_id = _vps_id_for_response(resolved.vpsid)
        # Password and its log entry land together or not at all
        await update_order_with_log(
            order['id'],
            {
                'password': get_secret_store().seal(password),
                'provisioning_status': 'provisioning',
                'last_action': 'reinstall',
                'last_action_time': datetime.utcnow(),
            },
            'reinstall',
            {'vpsId': vps_id, 'templateId': template_id, 'panel': resolved.panel.name,
             'password': mask_secret(password)},
            True,
        )
        logger.info(f"💿 SERVICE ACTION: Order {order['id']} reinstalled (vps {vps_id}, template {template_id})")
        return {'vpsId': vps_id, 'templateId': template_id, 'newPassword': password,
                'panel': resolved.panel.name, 'raw': raw}

    async def _change_password(self, order: Dict[str, Any], new_password: Optional[str],
                               action_log: ActionLogger) -> Dict[str, Any]:
        violation = password_policy_violation(new_password)
        if violation:
            raise ValidationFailed(violation)

        service_id = hostycare_service_id(order)
        if service_id:
            raw = await self._call_provider(action_log, 'hostycare', 'changepassword',
                                            self.hostycare.change_password(service_id, new_password))
            target = {'provider': 'hostycare', 'serviceId': service_id}
        else:
            resolved = await self._resolve(order, action_log)
            raw = await self._call_provider(action_log, 'virtualizor', 'changepassword',
                                            resolved.panel.change_password(resolved.vpsid, new_password))
            target = {'provider': 'virtualizor', 'panel': resolved.panel.name,
                      'vpsId': _vps_id_for_response(resolved.vpsid)}

        await update_order_with_log(
            order['id'],
            {
                'password': get_secret_store().seal(new_password),
                'last_action': 'changepassword',
                'last_action_time': datetime.utcnow(),
            },
            'changepassword',
            {**target, 'password': mask_secret(new_password)},
            True,
        )
        return {**target, 'raw': raw}

    async def get_credentials(self, order_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Login details for an order's server, password decrypted from the secret store

        Args:
            order_id: order to read
            user_id: when given, the order must belong to this user
        """
        try:
            order = await get_order(order_id)
            if not order:
                raise NotFound(f"Order {order_id} not found")
            if user_id is not None and str(order.get('user_id')) != str(user_id):
                raise PermissionDenied("Unauthorized to view credentials for this order")
        except OrchestratorError as e:
            return {'success': False, 'orderId': order_id, **e.to_dict()}

        ip = order.get('ip_address')
        logger.info(f"🔑 SERVICE ACTION: Credentials read for order {order_id}")
        return {
            'success': True,
            'orderId': order_id,
            'username': order.get('username'),
            'password': get_secret_store().reveal(order.get('password')),
            'ipAddress': None if not ip or ip == 'pending' or ip.startswith('Pending') else ip,
        }

    async def _follow_up_sync(self, order_id: int):
        """Refresh stored state after an action; never changes the action's outcome"""
        try:
            await self.state_sync.sync_order(order_id)
        except OrchestratorError as e:
            logger.warning(f"⚠️ SERVICE ACTION: Follow-up sync for order {order_id} failed: {e.message}")


# Global instance
_executor: Optional[ServerActionExecutor] = None

def get_action_executor() -> ServerActionExecutor:
    """Get or create global action executor"""
    global _executor
    if _executor is None:
        _executor = ServerActionExecutor()
    return _executor

async def execute_server_action(order_id: int, action: str, template_id: Optional[str] = None,
                                new_password: Optional[str] = None) -> Dict[str, Any]:
    """Convenience wrapper around the global executor"""
    return await get_action_executor().execute(order_id, action, template_id, new_password)
