"""
Hostycare reseller API integration service
Billing-style VPS provider: coarse service actions keyed by an opaque service id
"""

import os
import hmac
import base64
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from services.errors import ProviderRejected, ProviderUnavailable
from utils.environment import get_env_float, is_test_mode

logger = logging.getLogger(__name__)

PROVIDER_NAME = 'hostycare'
DEFAULT_ENDPOINT = 'https://www.hostycare.com/manage/modules/addons/ProductsReseller/api/index.php'
PENDING_IP_MARKER = 'Pending - Server being provisioned'


def build_form_params(obj: Any, parent_key: str = '', params: Optional[List[Tuple[str, str]]] = None) -> List[Tuple[str, str]]:
    """
    Flatten nested params into bracketed form fields

    {'fields': {'os': 'win'}, 'nsprefix': ['ns1', 'ns2']} becomes
    [('fields[os]', 'win'), ('nsprefix[]', 'ns1'), ('nsprefix[]', 'ns2')]
    """
    if params is None:
        params = []
    for key, value in (obj or {}).items():
        full_key = f"{parent_key}[{key}]" if parent_key else str(key)
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for item in value:
                if isinstance(item, dict):
                    build_form_params(item, f"{full_key}[]", params)
                else:
                    params.append((f"{full_key}[]", str(item)))
        elif isinstance(value, dict):
            build_form_params(value, full_key, params)
        elif isinstance(value, bool):
            params.append((full_key, '1' if value else '0'))
        else:
            params.append((full_key, str(value)))
    return params


def _dig(payload: Any, *paths: Tuple[str, ...]) -> Any:
    for path in paths:
        node = payload
        for key in path:
            if not isinstance(node, dict):
                node = None
                break
            node = node.get(key)
        if node not in (None, ''):
            return node
    return None


def extract_service_id(response: Any) -> Optional[str]:
    """Service id lives in one of several places depending on API version"""
    value = _dig(response, ('data', 'service', 'id'), ('service', 'id'), ('id',))
    return str(value) if value is not None else None


def extract_dedicated_ip(response: Any) -> Optional[str]:
    """Dedicated IP from create/details responses, None while still being assigned"""
    value = _dig(
        response,
        ('data', 'service', 'dedicatedip'), ('data', 'service', 'dedicatedIp'),
        ('service', 'dedicatedip'), ('service', 'dedicatedIp'),
        ('dedicatedip',), ('dedicatedIp',), ('ip',), ('ipAddress',),
    )
    if not value or value in ('pending', PENDING_IP_MARKER):
        return None
    return str(value)


def hostycare_service_id(order: Dict[str, Any]) -> Optional[str]:
    """Service id when the order is managed through Hostycare, else None (panel path)"""
    provider = (order.get('provider') or PROVIDER_NAME).strip().lower()
    if provider != PROVIDER_NAME:
        return None
    service_id = order.get('hostycare_service_id')
    return str(service_id) if service_id else None


class HostycareService:
    """Hostycare reseller API client"""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport
        self.timeout = get_env_float('HOSTYCARE_TIMEOUT', 30.0)

        # SECURITY: Check TEST_MODE to prevent live credential usage during tests
        if is_test_mode():
            logger.info("🔒 TEST_MODE active - using mock Hostycare configuration")
            self.endpoint = 'https://hostycare.test/api/index.php'
            self.username = 'test_user'
            self.api_key = 'test_api_key'
            return

        self.endpoint = os.getenv('HOSTYCARE_ENDPOINT', DEFAULT_ENDPOINT).rstrip('/')
        self.username = os.getenv('HOSTYCARE_USERNAME')
        self.api_key = os.getenv('HOSTYCARE_API_KEY')

        logger.info("🔧 Hostycare Service initialized:")
        logger.info(f"   • Username: {'✅ SET' if self.username else '❌ NOT SET'}")
        logger.info(f"   • API Key: {'✅ SET' if self.api_key else '❌ NOT SET'}")

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.api_key)

    def generate_token(self, now: Optional[datetime] = None) -> str:
        """
        Hourly rotating request token

        HMAC-SHA256 keyed with "<username>:<yy-mm-dd HH>" (UTC) over the API key,
        hex digest, then base64 encoded.
        """
        now = now or datetime.now(timezone.utc)
        current_hour = now.strftime('%y-%m-%d %H')
        key = f"{self.username}:{current_hour}".encode()
        digest = hmac.new(key, (self.api_key or '').encode(), hashlib.sha256).hexdigest()
        return base64.b64encode(digest.encode()).decode()

    async def _request(self, action: str, method: str = 'GET', params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one API call; raise ProviderUnavailable / ProviderRejected on failure"""
        if not self.is_configured:
            raise ProviderRejected(PROVIDER_NAME, "Hostycare credentials not configured (HOSTYCARE_USERNAME / HOSTYCARE_API_KEY)")

        url = f"{self.endpoint}{action}"
        headers = {
            'username': self.username,
            'token': self.generate_token(),
            'Accept': 'application/json',
        }
        timeout_config = httpx.Timeout(self.timeout, connect=5.0)

        logger.debug(f"🔗 HOSTYCARE: {method} {action}")
        try:
            async with httpx.AsyncClient(timeout=timeout_config, transport=self._transport) as client:
                if method == 'POST':
                    # Repeated keys (nsprefix[]) are sent as one list per key
                    form: Dict[str, List[str]] = {}
                    for key, value in build_form_params(params or {}):
                        form.setdefault(key, []).append(value)
                    response = await client.post(url, data=form, headers=headers)
                else:
                    response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"⏰ HOSTYCARE: Timeout on {method} {action}: {e}")
            raise ProviderUnavailable(PROVIDER_NAME, f"timeout after {self.timeout}s on {action}")
        except httpx.TransportError as e:
            logger.error(f"❌ HOSTYCARE: Network error on {method} {action}: {e}")
            raise ProviderUnavailable(PROVIDER_NAME, f"network error on {action}: {e}")

        if response.status_code >= 500:
            logger.error(f"❌ HOSTYCARE: HTTP {response.status_code} on {action}: {response.text[:300]}")
            raise ProviderUnavailable(PROVIDER_NAME, f"HTTP {response.status_code} on {action}")

        try:
            data = response.json()
        except ValueError:
            logger.error(f"❌ HOSTYCARE: Invalid JSON from {action}: {response.text[:300]}")
            raise ProviderUnavailable(PROVIDER_NAME, f"invalid JSON response from {action}")

        # Hostycare embeds business errors in 200 responses
        if not isinstance(data, dict):
            data = {'data': data}
        if response.status_code >= 400 or data.get('error') or data.get('success') is False:
            message = data.get('error') or data.get('message') or f"API request failed with status {response.status_code}"
            logger.warning(f"🚫 HOSTYCARE: {action} rejected: {message}")
            raise ProviderRejected(PROVIDER_NAME, str(message), raw=data)

        return data

    async def test_connection(self) -> Tuple[bool, str]:
        """Test Hostycare API connectivity"""
        try:
            await self._request('/testConnection')
            return True, "Connected to Hostycare"
        except (ProviderUnavailable, ProviderRejected) as e:
            return False, e.message

    async def create_server(self, product_id: str, order_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Place an order for a new server

        Args:
            product_id: Hostycare product id
            order_data: cycle, hostname, username, password, optional nsprefix/fields/configurations

        Returns:
            Raw API response (service id and possibly dedicated IP inside)
        """
        body: Dict[str, Any] = {
            'cycle': order_data.get('cycle') or 'monthly',
            'hostname': order_data.get('hostname'),
            'username': order_data.get('username'),
            'password': order_data.get('password'),
        }
        if isinstance(order_data.get('nsprefix'), list):
            body['nsprefix'] = order_data['nsprefix']
        if isinstance(order_data.get('fields'), dict):
            body['fields'] = order_data['fields']
        if isinstance(order_data.get('configurations'), dict):
            body['configurations'] = order_data['configurations']

        logger.info(f"🚀 HOSTYCARE: Creating server for product {product_id} ({body['hostname']})")
        return await self._request(f'/order/products/{product_id}', 'POST', body)

    async def get_service_details(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f'/services/{service_id}')

    async def get_service_info(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f'/services/{service_id}/getInfo')

    async def get_status(self, service_id: str) -> Dict[str, Any]:
        """Raw status payload: service details plus live info (info is optional upstream)"""
        details = await self.get_service_details(service_id)
        info = None
        try:
            info = await self.get_service_info(service_id)
        except ProviderRejected as e:
            logger.debug(f"HOSTYCARE: getInfo unavailable for {service_id}: {e.message}")
        return {'details': details, 'info': info}

    async def start(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f'/services/{service_id}/start', 'POST')

    async def stop(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f'/services/{service_id}/stop', 'POST')

    async def reboot(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f'/services/{service_id}/reboot', 'POST')

    async def change_password(self, service_id: str, new_password: str) -> Dict[str, Any]:
        return await self._request(f'/services/{service_id}/changepassword', 'POST', {'password': new_password})


# Global instance
_hostycare_service: Optional[HostycareService] = None

def get_hostycare_service() -> HostycareService:
    """Get or create global Hostycare client"""
    global _hostycare_service
    if _hostycare_service is None:
        _hostycare_service = HostycareService()
    return _hostycare_service
