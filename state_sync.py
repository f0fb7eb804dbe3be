"""
Server State Sync
Pulls provider status/IP/username for live orders and reconciles it into the order record,
on demand after an action or periodically in the background
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from action_logger import scrub
from database import get_order, get_orders_for_state_sync, update_order_fields
from performance_monitor import monitor_performance
from services.errors import NotFound, OrchestratorError, ValidationFailed
from services.hostycare import (
    HostycareService, extract_dedicated_ip, get_hostycare_service, hostycare_service_id, PENDING_IP_MARKER
)
from services.status_normalizer import (
    PowerState, ReadingKind, normalize_reading, parse_status_payload, provisioning_status_for
)
from services.virtualizor import VirtualizorPanel, get_default_panels
from services.vps_resolver import resolve_vps
from utils.environment import get_env_bool, get_env_int

logger = logging.getLogger(__name__)


def evaluate_status(details: Any, info: Any) -> Tuple[PowerState, Optional[str], Optional[str]]:
    """
    Power state and implied provisioning status for a provider snapshot

    Live info is preferred; service details are the fallback.

    Returns:
        (power_state, raw_token, provisioning_status or None for unchanged)
    """
    reading = parse_status_payload(info) if info is not None else None
    if reading is None or reading.kind == ReadingKind.RAW:
        reading = parse_status_payload(details)
    power_state = normalize_reading(reading)
    return power_state, reading.token, provisioning_status_for(power_state, reading.token)


def _extract_username(details: Any) -> Optional[str]:
    if not isinstance(details, dict):
        return None
    for container in (details, details.get('data', {}).get('service') if isinstance(details.get('data'), dict) else None,
                      details.get('service')):
        if isinstance(container, dict) and container.get('username'):
            return str(container['username'])
    return None


class ServerStateSync:
    """Provider → order reconciliation, modeled on periodic account monitoring"""

    def __init__(self, hostycare: Optional[HostycareService] = None,
                 panels: Optional[Sequence[VirtualizorPanel]] = None,
                 exhaustive_search: Optional[bool] = None):
        self.hostycare = hostycare or get_hostycare_service()
        self.panels = list(panels) if panels is not None else get_default_panels()
        self.exhaustive_search = (exhaustive_search if exhaustive_search is not None
                                  else get_env_bool('RESOLVER_EXHAUSTIVE_SEARCH', False))
        self.sync_enabled = True
        self.sync_interval = get_env_int('STATE_SYNC_INTERVAL', 300, minimum=10)
        self.batch_size = get_env_int('STATE_SYNC_BATCH_SIZE', 25, minimum=1)
        self.error_count = 0
        self.max_errors = 10  # Disable the loop after too many failed runs
        self.last_full_sync: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    async def fetch_snapshot(self, order: Dict[str, Any]) -> Tuple[Any, Any]:
        """Raw (details, info) for the order's server"""
        service_id = hostycare_service_id(order)
        if service_id:
            raw = await self.hostycare.get_status(service_id)
            return raw.get('details'), raw.get('info')

        ip = order.get('ip_address')
        if not ip or ip == 'pending' or ip == PENDING_IP_MARKER:
            raise ValidationFailed(f"Order {order['id']} has neither a service id nor an IP to sync from")
        resolved = await resolve_vps(self.panels, ip, order.get('hostname'), exhaustive=self.exhaustive_search)
        details = await resolved.panel.get_status(resolved.vpsid)
        return details, None

    async def apply_snapshot(self, order: Dict[str, Any], details: Any, info: Any) -> Dict[str, Any]:
        """Persist what the provider reports; returns the normalized view"""
        power_state, raw_token, new_status = evaluate_status(details, info)
        current_status = order.get('provisioning_status')
        now = datetime.utcnow()

        updates: Dict[str, Any] = {
            'last_sync_time': now,
            'server_details': {
                'last_updated': now.isoformat(),
                'raw_details': scrub(details),
                'raw_info': scrub(info),
                'power_state': power_state.value,
            },
        }

        # A transient busy state (reboot, migration) does not demote a live server
        if new_status == 'provisioning' and current_status in ('active', 'suspended'):
            new_status = None
        if new_status and new_status != current_status:
            updates['provisioning_status'] = new_status
            logger.info(f"🔄 STATE SYNC: Order {order['id']} {current_status} → {new_status} (provider: {raw_token})")

        ip = extract_dedicated_ip(details)
        if ip and ip != order.get('ip_address'):
            updates['ip_address'] = ip

        username = _extract_username(details)
        if username and username != order.get('username'):
            updates['username'] = username

        await update_order_fields(order['id'], updates)
        return {
            'orderId': order['id'],
            'powerState': power_state.value,
            'providerStatus': raw_token,
            'provisioningStatus': updates.get('provisioning_status', current_status),
            'statusChanged': 'provisioning_status' in updates,
            'ipAddress': updates.get('ip_address', order.get('ip_address')),
        }

    async def sync_order(self, order_id: int) -> Dict[str, Any]:
        """Fetch and reconcile one order; provider failures propagate to the caller"""
        order = await get_order(order_id)
        if not order:
            raise NotFound(f"Order {order_id} not found")
        details, info = await self.fetch_snapshot(order)
        result = await self.apply_snapshot(order, details, info)
        logger.debug(f"✅ STATE SYNC: Order {order_id} synced ({result['powerState']})")
        return result

    @monitor_performance("state_sync")
    async def sync_all(self) -> Dict[str, Any]:
        """Sync one batch of live orders, isolating per-order failures"""
        if not self.sync_enabled:
            logger.debug("🔇 State sync is disabled")
            return {"status": "disabled", "orders_checked": 0}

        orders = await get_orders_for_state_sync(self.batch_size)
        if not orders:
            logger.info("ℹ️ STATE SYNC: No live orders to sync")
            self.last_full_sync = time.time()
            return {"status": "success", "orders_checked": 0}

        logger.info(f"🔍 STATE SYNC: Checking {len(orders)} orders")
        results: Dict[str, Any] = {
            "total_orders": len(orders),
            "success_count": 0,
            "error_count": 0,
            "status_changes": 0,
            "orders_checked": 0,
            "errors": [],
        }

        for order in orders:
            results["orders_checked"] += 1
            try:
                details, info = await self.fetch_snapshot(order)
                applied = await self.apply_snapshot(order, details, info)
                results["success_count"] += 1
                if applied['statusChanged']:
                    results["status_changes"] += 1
            except OrchestratorError as e:
                logger.warning(f"⚠️ STATE SYNC: Order {order['id']} failed: {e.message}")
                results["error_count"] += 1
                results["errors"].append({'orderId': order['id'], **e.to_dict()})

        self.last_full_sync = time.time()
        logger.info(f"✅ STATE SYNC: {results['success_count']}/{results['total_orders']} orders synced")
        if results["status_changes"]:
            logger.info(f"🔄 STATE SYNC: {results['status_changes']} status changes detected")
        return {"status": "success", **results}

    async def _sync_loop(self):
        logger.info(f"✅ STATE SYNC: Background loop started (every {self.sync_interval}s)")
        while self.sync_enabled:
            try:
                await self.sync_all()
                self.error_count = 0
            except asyncio.CancelledError:
                logger.info("🔄 STATE SYNC: Background loop cancelled")
                raise
            except Exception as e:
                self.error_count += 1
                logger.exception(f"❌ STATE SYNC: Run failed ({self.error_count}/{self.max_errors}): {e}")
                if self.error_count >= self.max_errors:
                    self.sync_enabled = False
                    logger.error(f"🚫 STATE SYNC: Disabled after {self.max_errors} consecutive errors")
                    break
            await asyncio.sleep(self.sync_interval)

    def start(self):
        if self._task is not None and not self._task.done():
            return
        self.sync_enabled = True
        self.error_count = 0
        self._task = asyncio.create_task(self._sync_loop())

    async def stop(self):
        self.sync_enabled = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("🔄 STATE SYNC: Background loop stopped")

    def get_sync_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.sync_enabled,
            "running": self._task is not None and not self._task.done(),
            "last_full_sync": self.last_full_sync,
            "error_count": self.error_count,
            "max_errors": self.max_errors,
            "sync_interval": self.sync_interval,
            "batch_size": self.batch_size,
        }


# Global state sync instance
_state_sync: Optional[ServerStateSync] = None

def get_state_sync() -> ServerStateSync:
    """Get or create global state sync instance"""
    global _state_sync
    if _state_sync is None:
        _state_sync = ServerStateSync()
        logger.info("✅ State sync instance created")
    return _state_sync

async def run_state_sync() -> Dict[str, Any]:
    return await get_state_sync().sync_all()

def start_state_sync_loop():
    get_state_sync().start()

async def stop_state_sync_loop():
    if _state_sync is not None:
        await _state_sync.stop()
