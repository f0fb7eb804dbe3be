"""
Hostycare Client Tests
Token generation, bracketed form encoding, response parsing and error mapping
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from urllib.parse import parse_qsl

import httpx
import pytest

from services.errors import ProviderRejected, ProviderUnavailable
from services.hostycare import (
    PENDING_IP_MARKER, HostycareService, build_form_params, extract_dedicated_ip, extract_service_id
)


def _service(handler, calls=None):
    def recording(request):
        if calls is not None:
            calls.append(request)
        return handler(request)
    return HostycareService(transport=httpx.MockTransport(recording))


class TestTokenAndEncoding:
    """Pure helpers"""

    def test_token_is_base64_of_hourly_hmac_hexdigest(self):
        service = HostycareService()
        now = datetime(2024, 3, 7, 14, 59, tzinfo=timezone.utc)

        expected_digest = hmac.new(b'test_user:24-03-07 14', b'test_api_key', hashlib.sha256).hexdigest()
        expected = base64.b64encode(expected_digest.encode()).decode()

        assert service.generate_token(now) == expected

    def test_token_rotates_hourly(self):
        service = HostycareService()
        first = service.generate_token(datetime(2024, 3, 7, 14, 0, tzinfo=timezone.utc))
        same_hour = service.generate_token(datetime(2024, 3, 7, 14, 59, tzinfo=timezone.utc))
        next_hour = service.generate_token(datetime(2024, 3, 7, 15, 0, tzinfo=timezone.utc))
        assert first == same_hour
        assert first != next_hour

    def test_bracketed_form_params(self):
        params = build_form_params({
            'cycle': 'monthly',
            'fields': {'os': 'win2022', 'panel': None},
            'nsprefix': ['ns1', 'ns2'],
            'configurations': {'ram': {'size': 4}},
            'backup': True,
        })
        assert params == [
            ('cycle', 'monthly'),
            ('fields[os]', 'win2022'),
            ('nsprefix[]', 'ns1'),
            ('nsprefix[]', 'ns2'),
            ('configurations[ram][size]', '4'),
            ('backup', '1'),
        ]

    def test_extract_service_id_shapes(self):
        assert extract_service_id({'data': {'service': {'id': 321}}}) == '321'
        assert extract_service_id({'service': {'id': 'abc'}}) == 'abc'
        assert extract_service_id({'id': 7}) == '7'
        assert extract_service_id({'message': 'ok'}) is None

    def test_extract_dedicated_ip_ignores_pending(self):
        assert extract_dedicated_ip({'data': {'service': {'dedicatedip': '5.6.7.8'}}}) == '5.6.7.8'
        assert extract_dedicated_ip({'dedicatedIp': '9.9.9.9'}) == '9.9.9.9'
        assert extract_dedicated_ip({'dedicatedip': 'pending'}) is None
        assert extract_dedicated_ip({'ip': PENDING_IP_MARKER}) is None
        assert extract_dedicated_ip({}) is None


@pytest.mark.asyncio
class TestRequests:
    """HTTP behaviour through an in-process transport"""

    async def test_create_server_posts_bracketed_form(self):
        calls = []
        service = _service(lambda request: httpx.Response(200, json={'data': {'service': {'id': 55}}}), calls)

        result = await service.create_server('77', {
            'hostname': 'vps-4gb-abc123.com',
            'username': 'root',
            'password': 'Secret-Password-123456',
            'fields': {'os': 'ubuntu22'},
            'nsprefix': ['ns1'],
        })

        assert extract_service_id(result) == '55'
        request = calls[0]
        assert request.method == 'POST'
        assert request.url.path.endswith('/order/products/77')
        assert request.headers['username'] == 'test_user'
        assert base64.b64decode(request.headers['token'])
        form = parse_qsl(request.content.decode())
        assert ('cycle', 'monthly') in form
        assert ('fields[os]', 'ubuntu22') in form
        assert ('nsprefix[]', 'ns1') in form

    async def test_power_actions_hit_service_routes(self):
        calls = []
        service = _service(lambda request: httpx.Response(200, json={'result': 'success'}), calls)

        await service.start('42')
        await service.stop('42')
        await service.reboot('42')

        assert [c.url.path.rsplit('/', 2)[-2:] for c in calls] == [['42', 'start'], ['42', 'stop'], ['42', 'reboot']]
        assert all(c.method == 'POST' for c in calls)

    async def test_get_status_tolerates_missing_info(self):
        def handler(request):
            if request.url.path.endswith('/getInfo'):
                return httpx.Response(200, json={'error': 'Not supported for this product'})
            return httpx.Response(200, json={'status': 'Active'})

        raw = await _service(handler).get_status('42')

        assert raw == {'details': {'status': 'Active'}, 'info': None}

    async def test_business_error_in_200_is_rejection(self):
        service = _service(lambda request: httpx.Response(200, json={'error': 'Insufficient credit'}))

        with pytest.raises(ProviderRejected) as exc_info:
            await service.create_server('77', {'hostname': 'h', 'username': 'root', 'password': 'p'})

        assert exc_info.value.message == 'Insufficient credit'
        assert exc_info.value.raw == {'error': 'Insufficient credit'}
        assert exc_info.value.retryable is False

    async def test_success_false_is_rejection(self):
        service = _service(lambda request: httpx.Response(200, json={'success': False, 'message': 'Service suspended'}))

        with pytest.raises(ProviderRejected, match='Service suspended'):
            await service.start('42')

    async def test_server_error_is_unavailable(self):
        service = _service(lambda request: httpx.Response(502, text='Bad gateway'))

        with pytest.raises(ProviderUnavailable) as exc_info:
            await service.get_service_details('42')

        assert exc_info.value.retryable is True
        assert exc_info.value.to_dict()['provider'] == 'hostycare'

    async def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProviderUnavailable, match='timeout'):
            await _service(handler).get_service_details('42')

    async def test_connection_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderUnavailable, match='network error'):
            await _service(handler).get_service_details('42')

    async def test_invalid_json_is_unavailable(self):
        service = _service(lambda request: httpx.Response(200, text='<html>maintenance</html>'))

        with pytest.raises(ProviderUnavailable, match='invalid JSON'):
            await service.get_service_info("42")

    async def test_unconfigured_client_rejects_without_calling(self):
        calls = []
        service = _service(lambda request: httpx.Response(200, json={}), calls)
        service.api_key = None

        with pytest.raises(ProviderRejected, match='not configured'):
            await service.start('42')
        assert calls == []

    async def test_test_connection_reports_failure(self):
        service = _service(lambda request: httpx.Response(500, text='down'))

        ok, message = await service.test_connection()

        assert ok is False
        assert 'HTTP 500' in message
