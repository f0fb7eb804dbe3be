"""
Provisioning Orchestrator - turns a paid order into a running server

Architecture:
- Atomic claim: pending/failed → provisioning (compare-and-swap in the database)
- Provider order placement with bounded retry for transient unavailability
- Success writes credentials/IP/service id and status=active in one transaction with its log entry
- Rejections mark the order failed (retryable by the failed-orders workflow)
- Exhausted retries on an unavailable provider put the order back to pending
"""

import asyncio
import logging
import re
import secrets
import string
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from action_logger import ActionLogger, mask_secret
from database import claim_order_for_provisioning, get_order, update_order_with_log
from performance_monitor import OperationTimer
from services.action_executor import generate_secure_password
from services.errors import (
    ConflictFailed, NotFound, OrchestratorError, ProviderRejected, ProviderUnavailable, ValidationFailed
)
from services.hostycare import (
    PENDING_IP_MARKER, HostycareService, extract_dedicated_ip, extract_service_id, get_hostycare_service
)
from services.secret_store import get_secret_store
from utils.environment import get_env_float, get_env_int

logger = logging.getLogger(__name__)

PROVISIONABLE_STATUSES = ('paid', 'confirmed', 'active')
ORDER_PLACEMENT_PROVIDERS = ('hostycare',)
SERVICE_TERM_DAYS = 30

# Provider rejections that succeed on a retry with fresh credentials
RETRYABLE_REJECTIONS = (
    'password strength should not be less than 100',
    'the following ip(s) are used by another vps',
)

WINDOWS_KEYWORDS = ('windows', 'rdp', 'vps')


def is_windows_product(product_name: Optional[str]) -> bool:
    name = (product_name or '').lower()
    return any(keyword in name for keyword in WINDOWS_KEYWORDS)


def login_username_for(product_name: Optional[str]) -> str:
    """administrator for Windows-style products, root otherwise"""
    return 'administrator' if is_windows_product(product_name) else 'root'


def generate_hostname(product_name: Optional[str], memory: Optional[str]) -> str:
    """<product>-<mem>gb-<suffix>.com"""
    clean_name = re.sub(r'[^a-z0-9]', '', (product_name or '').lower()) or 'server'
    memory_code = re.sub(r'[^0-9]', '', str(memory or '')) or '0'
    suffix = ''.join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"{clean_name}-{memory_code}gb-{suffix}.com"


def is_retryable_rejection(message: Optional[str]) -> bool:
    text = (message or '').lower()
    return any(marker in text for marker in RETRYABLE_REJECTIONS)


def resolve_product_config(order: Dict[str, Any]) -> Tuple[str, Dict[str, Any], Dict[str, Any]]:
    """
    Provider product id plus order fields/configurations for an order

    provisioning_config may hold per-memory options:
        {"memory_options": {"4GB": {"hostycareProductId": "123", "fields": {...}, "configurations": {...}}},
         "fields": {...}, "configurations": {...}}

    Raises:
        ValidationFailed: no product id can be determined
    """
    config = order.get('provisioning_config') or {}
    memory = str(order.get('memory') or '')

    memory_config: Dict[str, Any] = {}
    options = config.get('memory_options') or {}
    wanted = memory.replace(' ', '').lower()
    for key, value in options.items():
        if str(key).replace(' ', '').lower() == wanted and isinstance(value, dict):
            memory_config = value
            break

    product_id = (order.get('hostycare_product_id')
                  or memory_config.get('hostycareProductId')
                  or memory_config.get('hostycare_product_id')
                  or memory_config.get('productId'))
    if not product_id or not str(product_id).strip():
        available = ', '.join(str(k) for k in options) or 'none'
        raise ValidationFailed(
            f"No provider product id for '{order.get('product_name')}' ({memory or 'no memory'}); "
            f"memory options: [{available}]"
        )

    fields = memory_config.get('fields') or config.get('fields') or {}
    configurations = memory_config.get('configurations') or config.get('configurations') or {}
    return str(product_id).strip(), dict(fields), dict(configurations)


class ProvisioningOrchestrator:
    """Single-order provisioning against order-placement providers"""

    def __init__(self, hostycare: Optional[HostycareService] = None,
                 max_attempts: Optional[int] = None, retry_delay: Optional[float] = None):
        self.hostycare = hostycare or get_hostycare_service()
        self.max_attempts = max_attempts if max_attempts is not None else get_env_int('PROVISION_MAX_ATTEMPTS', 3, minimum=1)
        self.retry_delay = retry_delay if retry_delay is not None else get_env_float('PROVISION_RETRY_DELAY', 2.0)

    async def provision_order(self, order_id: int, force: bool = False) -> Dict[str, Any]:
        """
        Provision one order

        Args:
            order_id: order to provision
            force: re-provision even if the order is already active

        Returns:
            {'success': True, 'orderId', 'serviceId', 'ipAddress', 'credentials', ...},
            {'success': True, 'skipped': True, 'alreadyProvisioned': True, ...} for an active order, or
            {'success': False, 'orderId', 'error', 'error_type', ...}
        """
        try:
            order = await self._check_eligibility(order_id, force)
        except OrchestratorError as e:
            logger.warning(f"⚠️ PROVISIONING: Order {order_id} not provisioned: {e.message}")
            return {'success': False, 'orderId': order_id, **e.to_dict()}

        if order is None:
            current = await get_order(order_id)
            logger.info(f"ℹ️ PROVISIONING: Order {order_id} already active - nothing to do")
            return {
                'success': True,
                'skipped': True,
                'alreadyProvisioned': True,
                'orderId': order_id,
                'serviceId': current.get('hostycare_service_id') if current else None,
                'ipAddress': current.get('ip_address') if current else None,
            }

        claimed = await claim_order_for_provisioning(order_id, force)
        if not claimed:
            error = ConflictFailed(f"Order {order_id} is already being provisioned or is no longer eligible")
            return {'success': False, 'orderId': order_id, **error.to_dict()}

        action_log = ActionLogger('provisioning', order_id=order_id, provider=claimed.get('provider'),
                                  product=claimed.get('product_name'), memory=claimed.get('memory'))
        action_log.info(f"Claimed order {order_id} for provisioning", {'force': force})
        logger.info(f"🚀 PROVISIONING: Starting order {order_id} ({claimed.get('product_name')} {claimed.get('memory')})")

        try:
            with OperationTimer("provision_order", log_result=False) as timer:
                result = await self._provision_claimed(claimed, action_log)
        except ProviderUnavailable as e:
            await self._release_for_retry(order_id, e, action_log)
            return {'success': False, 'orderId': order_id, **e.to_dict()}
        except OrchestratorError as e:
            await self._mark_failed(order_id, e, action_log)
            return {'success': False, 'orderId': order_id, **e.to_dict()}
        except Exception as e:
            # Never leave a claimed order stuck in provisioning
            logger.exception(f"💥 PROVISIONING: Unexpected error for order {order_id}: {e}")
            await self._mark_failed(order_id, OrchestratorError(f"Internal error: {e}"), action_log)
            raise

        result['durationMs'] = round(timer.duration_ms, 2)
        action_log.success("Provisioning completed", {'serviceId': result['serviceId'], 'duration_ms': result['durationMs']})
        await action_log.finalize(True)
        return result

    async def _check_eligibility(self, order_id: int, force: bool) -> Optional[Dict[str, Any]]:
        """Order dict if provisioning should proceed, None if it is already active"""
        order = await get_order(order_id)
        if not order:
            raise NotFound(f"Order {order_id} not found")
        if order.get('status') not in PROVISIONABLE_STATUSES:
            raise ValidationFailed(f"Order {order_id} is not paid (status: {order.get('status')})")
        if order.get('provisioning_status') == 'provisioning':
            raise ConflictFailed(f"Order {order_id} is already being provisioned")
        if order.get('provisioning_status') == 'active' and not force:
            return None
        return order

    async def _provision_claimed(self, order: Dict[str, Any], action_log: ActionLogger) -> Dict[str, Any]:
        order_id = order['id']
        provider = (order.get('provider') or 'hostycare').lower()
        if provider not in ORDER_PLACEMENT_PROVIDERS:
            raise ValidationFailed(f"Provider '{provider}' has no order-placement API; provision this order manually")

        product_id, fields, configurations = resolve_product_config(order)
        username = login_username_for(order.get('product_name'))
        hostname = generate_hostname(order.get('product_name'), order.get('memory'))
        target_os = order.get('os') or ('Windows 2022 64' if is_windows_product(order.get('product_name')) else 'Ubuntu 22')
        action_log.set_context(product_id=product_id, hostname=hostname)

        response = None
        password = None
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            password = generate_secure_password()
            order_data = {
                'cycle': 'monthly',
                'hostname': hostname,
                'username': username,
                'password': password,
                'fields': fields,
                'configurations': configurations,
            }
            action_log.info(f"Placing order (attempt {attempt}/{self.max_attempts})",
                            {'product_id': product_id, 'username': username, 'password': password})
            try:
                with OperationTimer("hostycare_create_server", log_result=False) as timer:
                    response = await self.hostycare.create_server(product_id, order_data)
                action_log.set_provider_result('hostycare', 'create_server', True, result=response,
                                               duration_ms=timer.duration_ms)
                break
            except ProviderUnavailable as e:
                action_log.set_provider_result('hostycare', 'create_server', False, error=e.message,
                                               duration_ms=timer.duration_ms)
                if attempt >= self.max_attempts:
                    raise
                logger.warning(f"⚠️ PROVISIONING: Order {order_id} attempt {attempt} - provider unavailable, retrying")
                action_log.warning(f"Provider unavailable, retrying: {e.message}")
                await asyncio.sleep(self.retry_delay * attempt)
            except ProviderRejected as e:
                action_log.set_provider_result('hostycare', 'create_server', False, error=e.message,
                                               duration_ms=timer.duration_ms)
                if attempt >= self.max_attempts or not is_retryable_rejection(e.message):
                    raise
                logger.warning(f"⚠️ PROVISIONING: Order {order_id} attempt {attempt} rejected ({e.message}), retrying with new credentials")
                action_log.warning(f"Retryable rejection: {e.message}")
                await asyncio.sleep(self.retry_delay * attempt)

        service_id = extract_service_id(response)
        if not service_id:
            raise ProviderRejected('hostycare', "Service ID not found in order response", raw=response)

        ip_address = extract_dedicated_ip(response)
        if not ip_address:
            logger.info(f"⌛ PROVISIONING: IP for order {order_id} not assigned yet - state sync will pick it up")

        await update_order_with_log(
            order_id,
            {
                'status': 'active',
                'provisioning_status': 'active',
                'hostycare_service_id': service_id,
                'username': username,
                'password': get_secret_store().seal(password),
                'ip_address': ip_address or PENDING_IP_MARKER,
                'hostname': hostname,
                'os': target_os,
                'auto_provisioned': True,
                'provisioning_error': None,
                'expiry_date': datetime.utcnow() + timedelta(days=SERVICE_TERM_DAYS),
            },
            'provision',
            {'serviceId': service_id, 'productId': product_id, 'hostname': hostname,
             'ipAddress': ip_address, 'attempts': attempts, 'password': mask_secret(password)},
            True,
        )

        logger.info(f"✅ PROVISIONING: Order {order_id} active - service {service_id}, IP {ip_address or 'pending'}")
        return {
            'success': True,
            'orderId': order_id,
            'serviceId': service_id,
            'ipAddress': ip_address,
            'credentials': {'username': username, 'password': password},
            'hostname': hostname,
            'productId': product_id,
            'attempts': attempts,
        }

    async def _mark_failed(self, order_id: int, error: OrchestratorError, action_log: ActionLogger):
        logger.error(f"❌ PROVISIONING: Order {order_id} failed: {error.message}")
        await update_order_with_log(
            order_id,
            {'provisioning_status': 'failed', 'provisioning_error': error.message, 'auto_provisioned': True},
            'provision',
            {'error': error.message, 'error_type': error.kind},
            False,
        )
        await action_log.finalize(False, error.message)

    async def _release_for_retry(self, order_id: int, error: ProviderUnavailable, action_log: ActionLogger):
        """Provider stayed unreachable: back to pending so the order is picked up again"""
        logger.error(f"⏰ PROVISIONING: Order {order_id} - provider unavailable after {self.max_attempts} attempts, left pending")
        await update_order_with_log(
            order_id,
            {'provisioning_status': 'pending', 'provisioning_error': error.message},
            'provision',
            {'error': error.message, 'error_type': error.kind, 'attempts': self.max_attempts},
            False,
        )
        await action_log.finalize(False, error.message)

    async def get_provisioning_status(self, order_id: int) -> Dict[str, Any]:
        order = await get_order(order_id)
        if not order:
            return {'success': False, 'orderId': order_id, **NotFound(f"Order {order_id} not found").to_dict()}
        ip = order.get('ip_address')
        return {
            'success': True,
            'orderId': order_id,
            'provisioningStatus': order.get('provisioning_status'),
            'provisioningError': order.get('provisioning_error'),
            'serviceId': order.get('hostycare_service_id'),
            'autoProvisioned': bool(order.get('auto_provisioned')),
            'ipAddress': None if ip == PENDING_IP_MARKER else ip,
        }


# Global instance
_orchestrator: Optional[ProvisioningOrchestrator] = None

def get_provisioning_orchestrator() -> ProvisioningOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ProvisioningOrchestrator()
    return _orchestrator

async def provision_order(order_id: int, force: bool = False) -> Dict[str, Any]:
    return await get_provisioning_orchestrator().provision_order(order_id, force)
