"""
VPS Resolver Tests
Sequential panel search, early exit, exhaustive determinism and failure reporting
"""

import httpx
import pytest

from services.errors import ProviderUnavailable, ResolutionFailed, ValidationFailed
from services.virtualizor import VirtualizorPanel
from services.vps_resolver import resolve_vps


def _vm(vpsid, ip, hostname='host.example.com', virt='kvm'):
    return {'vpsid': vpsid, 'hostname': hostname, 'ips': {'1': ip}, 'virt': virt, 'status': 1}


def _unreachable_panel(name):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)
    return VirtualizorPanel(name=name, host=f"{name}.panel.test", api_key="k", api_pass="p",
                            transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
class TestSequentialSearch:
    """Default mode stops at the first panel that owns the IP"""

    async def test_ip_on_second_of_three_panels(self, panel_factory):
        calls_a, calls_b, calls_c = [], [], []
        panels = [
            panel_factory('panel-a', [_vm('100', '10.0.0.1')], calls_a),
            panel_factory('panel-b', [_vm('200', '10.0.0.5')], calls_b),
            panel_factory('panel-c', [_vm('300', '10.0.0.9')], calls_c),
        ]

        resolved = await resolve_vps(panels, '10.0.0.5')

        assert resolved.panel.name == 'panel-b'
        assert resolved.vpsid == '200'
        assert len(calls_a) == 1
        assert len(calls_b) == 1
        assert calls_c == []

    async def test_hostname_breaks_ties_within_a_panel(self, panel_factory):
        panels = [panel_factory('panel-a', [
            _vm('100', '10.0.0.5', hostname='old.example.com'),
            _vm('101', '10.0.0.5', hostname='new.example.com'),
        ])]

        resolved = await resolve_vps(panels, '10.0.0.5', hostname='NEW.example.com')

        assert resolved.vpsid == '101'

    async def test_broken_panel_does_not_hide_later_match(self, panel_factory):
        broken = VirtualizorPanel(
            name='broken', host='broken.panel.test', api_key='k', api_pass='p',
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text='maintenance')),
        )
        panels = [broken, panel_factory('panel-b', [_vm('200', '10.0.0.5')])]

        resolved = await resolve_vps(panels, '10.0.0.5')

        assert resolved.panel.name == 'panel-b'


@pytest.mark.asyncio
class TestExhaustiveSearch:
    """Exhaustive mode picks the same VM whatever the panel order"""

    async def test_same_result_regardless_of_panel_order(self, panel_factory):
        panel_a = panel_factory('panel-a', [_vm('100', '10.0.0.1')])
        panel_b = panel_factory('panel-b', [_vm('200', '10.0.0.5')])
        panel_c = panel_factory('panel-c', [_vm('300', '10.0.0.9')])

        forward = await resolve_vps([panel_a, panel_b, panel_c], '10.0.0.5', exhaustive=True)
        backward = await resolve_vps([panel_c, panel_b, panel_a], '10.0.0.5', exhaustive=True)

        assert forward.vpsid == backward.vpsid == '200'
        assert forward.panel.name == backward.panel.name == 'panel-b'

    async def test_duplicate_ip_resolved_deterministically(self, panel_factory):
        panel_x = panel_factory('panel-x', [_vm('900', '10.0.0.5')])
        panel_y = panel_factory('panel-y', [_vm('800', '10.0.0.5')])

        first = await resolve_vps([panel_y, panel_x], '10.0.0.5', exhaustive=True)
        second = await resolve_vps([panel_x, panel_y], '10.0.0.5', exhaustive=True)

        assert (first.panel.name, first.vpsid) == (second.panel.name, second.vpsid) == ('panel-x', '900')

    async def test_hostname_preferred_across_panels(self, panel_factory):
        panel_x = panel_factory('panel-x', [_vm('900', '10.0.0.5', hostname='a.example.com')])
        panel_y = panel_factory('panel-y', [_vm('800', '10.0.0.5', hostname='b.example.com')])

        resolved = await resolve_vps([panel_x, panel_y], '10.0.0.5', hostname='b.example.com', exhaustive=True)

        assert resolved.panel.name == 'panel-y'


@pytest.mark.asyncio
class TestResolutionFailures:
    """No match and bad input are reported, never swallowed"""

    async def test_not_found_lists_searched_panels(self, panel_factory):
        panels = [
            panel_factory('panel-a', [_vm('100', '10.0.0.1')]),
            panel_factory('panel-b', [_vm('200', '10.0.0.2')]),
        ]

        with pytest.raises(ResolutionFailed) as exc_info:
            await resolve_vps(panels, '10.9.9.9')

        assert exc_info.value.searched_panels == ['panel-a', 'panel-b']
        assert 'panel-a' in exc_info.value.message
        assert exc_info.value.to_dict()['error_type'] == 'resolution_failed'

    async def test_panel_errors_are_reported(self):
        broken = VirtualizorPanel(
            name='broken', host='broken.panel.test', api_key='k', api_pass='p',
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={'error': ['Invalid API key']})),
        )

        with pytest.raises(ResolutionFailed) as exc_info:
            await resolve_vps([broken], '10.0.0.5')

        assert exc_info.value.errors == {'broken': 'Invalid API key'}

    async def test_no_panels_configured(self):
        with pytest.raises(ResolutionFailed) as exc_info:
            await resolve_vps([], '10.0.0.5')
        assert 'no hypervisor panels configured' in exc_info.value.message

    @pytest.mark.parametrize("ip", [None, '', '   '])
    async def test_missing_ip_is_validation_error(self, ip, panel_factory):
        with pytest.raises(ValidationFailed):
            await resolve_vps([panel_factory('panel-a', [])], ip)


@pytest.mark.asyncio
class TestPanelOutages:
    """Unreachable panels make the lookup retryable instead of a definitive miss"""

    async def test_all_panels_down_is_unavailable(self):
        panels = [_unreachable_panel('panel-a'), _unreachable_panel('panel-b')]

        with pytest.raises(ProviderUnavailable) as exc_info:
            await resolve_vps(panels, '10.0.0.5')

        error = exc_info.value
        assert error.retryable is True
        assert error.searched_panels == ['panel-a', 'panel-b']
        assert set(error.panel_errors) == {'panel-a', 'panel-b'}
        data = error.to_dict()
        assert data['error_type'] == 'provider_unavailable'
        assert data['searched_panels'] == ['panel-a', 'panel-b']

    async def test_miss_plus_outage_is_unavailable(self, panel_factory):
        panels = [panel_factory('panel-a', [_vm('100', '10.0.0.1')]), _unreachable_panel('panel-b')]

        with pytest.raises(ProviderUnavailable) as exc_info:
            await resolve_vps(panels, '10.0.0.5', exhaustive=True)

        assert exc_info.value.searched_panels == ['panel-a', 'panel-b']
        assert list(exc_info.value.panel_errors) == ['panel-b']

    async def test_match_elsewhere_still_wins_over_outage(self, panel_factory):
        panels = [_unreachable_panel('panel-a'), panel_factory('panel-b', [_vm('200', '10.0.0.5')])]

        resolved = await resolve_vps(panels, '10.0.0.5', exhaustive=True)

        assert resolved.vpsid == '200'
