"""
Virtualizor end-user API integration
One VirtualizorPanel per independently addressable panel instance; a deployment may run several
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from services.errors import ProviderRejected, ProviderUnavailable
from utils.environment import get_env_bool, get_env_float, get_virtualizor_panel_configs, is_test_mode

logger = logging.getLogger(__name__)

PROVIDER_NAME = 'virtualizor'
LIST_PAGE_SIZE = 50
MAX_LIST_PAGES = 40


@dataclass
class PanelVM:
    """A VM as listed by one panel"""
    vpsid: str
    hostname: str = ''
    ips: List[str] = field(default_factory=list)
    virt: str = ''
    status: Any = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _collect_ips(raw_ips: Any) -> List[str]:
    """Panels return ips as {id: ip}, [ip, ...] or a bare string"""
    if isinstance(raw_ips, dict):
        values = list(raw_ips.values())
    elif isinstance(raw_ips, (list, tuple)):
        values = list(raw_ips)
    elif raw_ips:
        values = [raw_ips]
    else:
        values = []
    ips = []
    for value in values:
        if isinstance(value, dict):
            value = value.get('ip')
        if value:
            ips.append(str(value).strip())
    return ips


def _error_message(data: Dict[str, Any]) -> Optional[str]:
    error = data.get('error')
    if not error:
        return None
    if isinstance(error, dict):
        return '; '.join(str(v) for v in error.values())
    if isinstance(error, (list, tuple)):
        return '; '.join(str(v) for v in error)
    return str(error)


class VirtualizorPanel:
    """Client for a single Virtualizor panel (end-user API on port 4083)"""

    def __init__(self, name: str, host: str, api_key: str, api_pass: str,
                 port: int = 4083, protocol: str = 'https', verify_ssl: bool = True,
                 timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.name = name
        self.host = host
        self.port = int(port)
        self.protocol = protocol
        self.api_key = api_key
        self.api_pass = api_pass
        self.verify_ssl = verify_ssl
        self.timeout = timeout if timeout is not None else get_env_float('VIRTUALIZOR_TIMEOUT', 20.0)
        self._transport = transport

    def __repr__(self) -> str:
        return f"VirtualizorPanel(name={self.name!r}, host={self.host!r})"

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}/index.php"

    async def _request(self, act: str, query: Optional[Dict[str, Any]] = None,
                       data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call one panel action; POST when form data is supplied"""
        params = {'act': act, 'api': 'json', 'apikey': self.api_key, 'apipass': self.api_pass}
        params.update({k: v for k, v in (query or {}).items() if v is not None})
        timeout_config = httpx.Timeout(self.timeout, connect=5.0)

        logger.debug(f"🔗 VIRTUALIZOR [{self.name}]: act={act}")
        try:
            async with httpx.AsyncClient(verify=self.verify_ssl, timeout=timeout_config,
                                         transport=self._transport, follow_redirects=True) as client:
                if data is not None:
                    response = await client.post(self.base_url, params=params, data=data)
                else:
                    response = await client.get(self.base_url, params=params)
        except httpx.TimeoutException as e:
            logger.error(f"⏰ VIRTUALIZOR [{self.name}]: Timeout on act={act}: {e}")
            raise ProviderUnavailable(PROVIDER_NAME, f"panel {self.name} timed out on {act}")
        except httpx.TransportError as e:
            logger.error(f"❌ VIRTUALIZOR [{self.name}]: Network error on act={act}: {e}")
            raise ProviderUnavailable(PROVIDER_NAME, f"panel {self.name} network error on {act}: {e}")

        if response.status_code >= 500:
            raise ProviderUnavailable(PROVIDER_NAME, f"panel {self.name} returned HTTP {response.status_code} on {act}")

        try:
            payload = response.json()
        except ValueError:
            logger.error(f"❌ VIRTUALIZOR [{self.name}]: Invalid JSON for act={act}: {response.text[:200]}")
            raise ProviderUnavailable(PROVIDER_NAME, f"panel {self.name} returned invalid JSON on {act}")

        if not isinstance(payload, dict):
            payload = {'data': payload}

        message = _error_message(payload)
        if message or response.status_code >= 400:
            message = message or f"HTTP {response.status_code}"
            logger.warning(f"🚫 VIRTUALIZOR [{self.name}]: act={act} rejected: {message}")
            raise ProviderRejected(PROVIDER_NAME, message, raw=payload)

        return payload

    async def list_vms(self) -> List[PanelVM]:
        """All VMs visible to this API key, following pagination"""
        vms: List[PanelVM] = []
        seen = set()
        for page in range(1, MAX_LIST_PAGES + 1):
            data = await self._request('listvs', {'page': page, 'reslen': LIST_PAGE_SIZE})
            raw_vms = data.get('vs') or {}
            if isinstance(raw_vms, dict):
                raw_vms = list(raw_vms.values())

            new_on_page = 0
            for raw in raw_vms:
                if not isinstance(raw, dict):
                    continue
                vpsid = str(raw.get('vpsid') or raw.get('vps_id') or raw.get('id') or '')
                if not vpsid or vpsid in seen:
                    continue
                seen.add(vpsid)
                new_on_page += 1
                vms.append(PanelVM(
                    vpsid=vpsid,
                    hostname=str(raw.get('hostname') or ''),
                    ips=_collect_ips(raw.get('ips') or raw.get('ip')),
                    virt=str(raw.get('virt') or ''),
                    status=raw.get('status'),
                    raw=raw,
                ))

            # Some panels ignore paging and return everything on every page
            if len(raw_vms) < LIST_PAGE_SIZE or new_on_page == 0:
                break

        logger.debug(f"VIRTUALIZOR [{self.name}]: listed {len(vms)} VMs")
        return vms

    async def find_vms(self, ip: Optional[str] = None, hostname: Optional[str] = None) -> List[PanelVM]:
        """Every VM on this panel owning the IP (or matching the hostname when no IP is given)"""
        vms = await self.list_vms()
        if ip:
            ip = ip.strip()
            return [vm for vm in vms if ip in vm.ips]
        if hostname:
            wanted = hostname.strip().lower()
            return [vm for vm in vms if vm.hostname.lower() == wanted]
        return []

    async def find_vm(self, ip: Optional[str] = None, hostname: Optional[str] = None) -> Optional[str]:
        """Panel-local vpsid for the IP/hostname, or None"""
        matches = await self.find_vms(ip, hostname)
        if not matches:
            return None
        if hostname and len(matches) > 1:
            wanted = hostname.strip().lower()
            for vm in matches:
                if vm.hostname.lower() == wanted:
                    return vm.vpsid
        return matches[0].vpsid

    async def start(self, vpsid: str) -> Dict[str, Any]:
        return await self._request('start', {'svs': vpsid, 'do': 1})

    async def stop(self, vpsid: str) -> Dict[str, Any]:
        return await self._request('stop', {'svs': vpsid, 'do': 1})

    async def reboot(self, vpsid: str) -> Dict[str, Any]:
        return await self._request('restart', {'svs': vpsid, 'do': 1})

    async def get_status(self, vpsid: str) -> Dict[str, Any]:
        return await self._request('vpsmanage', {'svs': vpsid})

    async def get_templates(self, vpsid: str) -> Dict[str, Any]:
        """Raw OS template catalog offered for this VM"""
        return await self._request('ostemplate', {'svs': vpsid})

    async def reinstall(self, vpsid: str, template_id: str, password: str) -> Dict[str, Any]:
        logger.info(f"💿 VIRTUALIZOR [{self.name}]: Reinstalling VPS {vpsid} with template {template_id}")
        return await self._request(
            'ostemplate',
            {'svs': vpsid},
            data={'newos': template_id, 'newpass': password, 'conf': password, 'reos': 1},
        )

    async def change_password(self, vpsid: str, new_password: str) -> Dict[str, Any]:
        return await self._request(
            'changepassword',
            {'svs': vpsid},
            data={'newpass': new_password, 'conf': new_password, 'changepass': 1},
        )

    async def test_connection(self) -> bool:
        try:
            await self._request('listvs', {'page': 1, 'reslen': 1})
            return True
        except (ProviderUnavailable, ProviderRejected) as e:
            logger.warning(f"⚠️ VIRTUALIZOR [{self.name}]: connection test failed: {e.message}")
            return False


def load_panels(configs: Optional[List[Dict[str, Any]]] = None) -> List[VirtualizorPanel]:
    """
    Build panel clients from configuration, preserving search order

    Args:
        configs: panel dicts; defaults to environment configuration

    Returns:
        list: VirtualizorPanel instances
    """
    if configs is None:
        if is_test_mode():
            logger.info("🔒 TEST_MODE active - no Virtualizor panels loaded from environment")
            return []
        configs = get_virtualizor_panel_configs()

    verify_default = get_env_bool('VIRTUALIZOR_VERIFY_SSL', True)
    panels = []
    for index, config in enumerate(configs, start=1):
        if not config.get('host'):
            logger.warning(f"⚠️ VIRTUALIZOR: panel #{index} has no host, skipping")
            continue
        panels.append(VirtualizorPanel(
            name=config.get('name') or f'panel-{index}',
            host=config['host'],
            api_key=config.get('api_key', ''),
            api_pass=config.get('api_pass', ''),
            port=config.get('port', 4083),
            protocol=config.get('protocol', 'https'),
            verify_ssl=config.get('verify_ssl', verify_default),
        ))

    logger.info(f"🔧 VIRTUALIZOR: {len(panels)} panel(s) configured: {[p.name for p in panels]}")
    return panels


# Global default panel list
_default_panels: Optional[List[VirtualizorPanel]] = None

def get_default_panels() -> List[VirtualizorPanel]:
    """Lazily loaded panel list from environment"""
    global _default_panels
    if _default_panels is None:
        _default_panels = load_panels()
    return _default_panels
