"""
VPS Resolver - find which hypervisor panel owns a server, given its IP

Panels are searched sequentially in configured order. The default mode returns on
the first panel with a match; exhaustive mode queries every panel and picks a
deterministic winner independent of panel order.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from services.errors import ProviderRejected, ProviderUnavailable, ResolutionFailed, ValidationFailed
from services.virtualizor import PanelVM, VirtualizorPanel

logger = logging.getLogger(__name__)


@dataclass
class ResolvedVPS:
    panel: VirtualizorPanel
    vpsid: str
    vm: PanelVM


def _pick(candidates: List[PanelVM], hostname: Optional[str]) -> PanelVM:
    if hostname and len(candidates) > 1:
        wanted = hostname.strip().lower()
        for vm in candidates:
            if vm.hostname.lower() == wanted:
                return vm
    return candidates[0]


async def resolve_vps(panels: Sequence[VirtualizorPanel], ip: Optional[str],
                      hostname: Optional[str] = None, exhaustive: bool = False) -> ResolvedVPS:
    """
    Locate the VM owning ip across panels

    Args:
        panels: panel clients in search order
        ip: server IP address (required)
        hostname: optional tie-breaker when more than one VM claims the IP
        exhaustive: query all panels instead of stopping at the first match

    Returns:
        ResolvedVPS for the matching VM

    Raises:
        ValidationFailed: no IP supplied
        ProviderUnavailable: no match and at least one panel could not be reached
        ResolutionFailed: every panel answered and none owns the IP (lists the panels searched)
    """
    if not ip or not str(ip).strip():
        raise ValidationFailed("IP address is required to resolve a VPS")
    ip = str(ip).strip()

    searched: List[str] = []
    panel_errors: Dict[str, str] = {}
    unavailable: List[str] = []
    matches: List[ResolvedVPS] = []

    for panel in panels:
        searched.append(panel.name)
        try:
            candidates = await panel.find_vms(ip=ip)
        except (ProviderUnavailable, ProviderRejected) as e:
            # One broken panel must not hide a VM living on another
            logger.warning(f"⚠️ VPS RESOLVER: panel {panel.name} failed during lookup of {ip}: {e.message}")
            panel_errors[panel.name] = e.message
            if isinstance(e, ProviderUnavailable):
                unavailable.append(panel.name)
            continue

        if not candidates:
            logger.debug(f"VPS RESOLVER: {ip} not on panel {panel.name}")
            continue

        vm = _pick(candidates, hostname)
        matches.append(ResolvedVPS(panel=panel, vpsid=vm.vpsid, vm=vm))
        if not exhaustive:
            logger.info(f"✅ VPS RESOLVER: {ip} → vpsid {vm.vpsid} on panel {panel.name}")
            return matches[0]

    if not matches:
        if unavailable:
            # An unreachable panel may still own the IP
            logger.error(f"❌ VPS RESOLVER: {ip} unresolved, unreachable panels: {unavailable}")
            raise ProviderUnavailable(
                'virtualizor',
                f"could not search panels [{', '.join(unavailable)}] for IP {ip}",
                searched_panels=searched,
                panel_errors=panel_errors,
            )
        logger.error(f"❌ VPS RESOLVER: No VM found for {ip}, searched panels: {searched}")
        raise ResolutionFailed(ip, searched, panel_errors)

    if len(matches) > 1:
        logger.warning(f"⚠️ VPS RESOLVER: {ip} claimed by {len(matches)} panels: "
                       f"{[(m.panel.name, m.vpsid) for m in matches]}")
        if hostname:
            wanted = hostname.strip().lower()
            by_hostname = [m for m in matches if m.vm.hostname.lower() == wanted]
            if by_hostname:
                matches = by_hostname
        # Stable choice regardless of panel order
        matches.sort(key=lambda m: (m.panel.name, m.vpsid))

    winner = matches[0]
    logger.info(f"✅ VPS RESOLVER: {ip} → vpsid {winner.vpsid} on panel {winner.panel.name} (exhaustive)")
    return winner
