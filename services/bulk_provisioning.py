"""
Bulk Provisioning Coordinator
Fans single-order provisioning out over a batch with bounded concurrency.
One order's failure or exception never affects the others.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from database import get_failed_orders, get_orders_by_ids, get_provisionable_orders
from performance_monitor import OperationTimer
from services.provisioning_orchestrator import (
    PROVISIONABLE_STATUSES, ProvisioningOrchestrator, get_provisioning_orchestrator
)
from utils.environment import get_env_int

logger = logging.getLogger(__name__)


def check_bulk_eligibility(order: Dict[str, Any], force: bool = False) -> Tuple[bool, Optional[str]]:
    """
    Paid AND (never auto-provisioned OR previously failed)

    Returns:
        (eligible, reason when not eligible)
    """
    if order.get('status') not in PROVISIONABLE_STATUSES:
        return False, f"order status '{order.get('status')}' is not paid"
    if order.get('provisioning_status') == 'provisioning':
        return False, "provisioning already in progress"
    if force:
        return True, None
    if order.get('auto_provisioned') and order.get('provisioning_status') != 'failed':
        return False, "already auto-provisioned"
    return True, None


class BulkProvisioningCoordinator:
    """Runs the provisioning orchestrator over many orders"""

    def __init__(self, orchestrator: Optional[ProvisioningOrchestrator] = None,
                 max_workers: Optional[int] = None):
        self.orchestrator = orchestrator or get_provisioning_orchestrator()
        self.max_workers = max_workers if max_workers is not None else get_env_int('BULK_PROVISION_MAX_WORKERS', 3, minimum=1)

    async def _provision_one(self, semaphore: asyncio.Semaphore, order_id: int, force: bool) -> Dict[str, Any]:
        async with semaphore:
            try:
                return await self.orchestrator.provision_order(order_id, force=force)
            except Exception as e:
                # Isolation: an unexpected error becomes this order's failure only
                logger.exception(f"💥 BULK PROVISION: Order {order_id} raised: {e}")
                return {'success': False, 'orderId': order_id, 'error': str(e), 'error_type': 'internal_error'}

    async def provision_orders(self, order_ids: List[int], force: bool = False) -> Dict[str, Any]:
        """
        Provision every eligible order in order_ids

        Returns:
            {'success', 'total', 'successful', 'failed', 'skipped', 'results': [...]}
        """
        unique_ids = list(dict.fromkeys(order_ids))
        logger.info(f"📦 BULK PROVISION: Starting batch of {len(unique_ids)} orders (workers={self.max_workers})")

        with OperationTimer("bulk_provision", log_result=False) as timer:
            orders = {order['id']: order for order in await get_orders_by_ids(unique_ids)}

            results: Dict[int, Dict[str, Any]] = {}
            eligible: List[int] = []
            for order_id in unique_ids:
                order = orders.get(order_id)
                if order is None:
                    results[order_id] = {'success': False, 'skipped': True, 'orderId': order_id, 'reason': 'order not found'}
                    continue
                ok, reason = check_bulk_eligibility(order, force)
                if not ok:
                    logger.info(f"⏭️ BULK PROVISION: Skipping order {order_id}: {reason}")
                    results[order_id] = {'success': False, 'skipped': True, 'orderId': order_id, 'reason': reason}
                    continue
                eligible.append(order_id)

            semaphore = asyncio.Semaphore(self.max_workers)
            outcomes = await asyncio.gather(*(self._provision_one(semaphore, oid, force) for oid in eligible))
            for order_id, outcome in zip(eligible, outcomes):
                results[order_id] = {'orderId': order_id, **outcome}

        ordered = [results[oid] for oid in unique_ids]
        skipped = sum(1 for r in ordered if r.get('skipped'))
        successful = sum(1 for r in ordered if r.get('success') and not r.get('skipped'))
        failed = sum(1 for r in ordered if not r.get('success') and not r.get('skipped'))

        logger.info(f"🏁 BULK PROVISION: {successful} successful, {failed} failed, {skipped} skipped "
                    f"in {timer.duration_ms:.0f}ms")
        return {
            'success': failed == 0,
            'total': len(ordered),
            'successful': successful,
            'failed': failed,
            'skipped': skipped,
            'results': ordered,
        }

    async def list_provisionable_orders(self, limit: int = 100) -> List[Dict[str, Any]]:
        orders = await get_provisionable_orders(limit)
        return [
            {
                'orderId': order['id'],
                'productName': order.get('product_name'),
                'memory': order.get('memory'),
                'status': order.get('status'),
                'provisioningStatus': order.get('provisioning_status'),
                'provisioningError': order.get('provisioning_error'),
                'autoProvisioned': bool(order.get('auto_provisioned')),
            }
            for order in orders
        ]

    async def provision_all_pending(self, limit: int = 100) -> Dict[str, Any]:
        orders = await get_provisionable_orders(limit)
        return await self.provision_orders([order['id'] for order in orders])

    async def retry_failed_orders(self, limit: int = 100) -> Dict[str, Any]:
        """Re-run provisioning for orders whose last attempt failed"""
        orders = await get_failed_orders(limit)
        logger.info(f"🔁 BULK PROVISION: Retrying {len(orders)} failed orders")
        return await self.provision_orders([order['id'] for order in orders])


# Global instance
_coordinator: Optional[BulkProvisioningCoordinator] = None

def get_bulk_coordinator() -> BulkProvisioningCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = BulkProvisioningCoordinator()
    return _coordinator
