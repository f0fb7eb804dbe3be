"""Environment configuration helpers"""

import os
import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

def is_test_mode() -> bool:
    """TEST_MODE=1 keeps provider clients away from live hosts"""
    return os.getenv('TEST_MODE') == '1'

def get_env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read an integer setting, falling back to default on garbage values"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default
    return max(minimum, value)

def get_env_float(name: str, default: float) -> float:
    """Read a float setting, falling back to default on garbage values"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}={raw!r}, using default {default}")
        return default

def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')

def get_virtualizor_panel_configs() -> List[Dict[str, Any]]:
    """
    Collect hypervisor panel definitions from the environment

    VIRTUALIZOR_VERIFY_SSL is the TLS verification default for every source; a panel's own
    verify_ssl (JSON key or _VERIFY_SSL variable) overrides it.

    Sources, first match wins:
        1. VIRTUALIZOR_PANELS - JSON list of {name, host, port, protocol, api_key, api_pass, verify_ssl}
        2. VIRTUALIZOR_PANEL_<n>_HOST / _PORT / _API_KEY / _API_PASS / _NAME / _PROTOCOL for n = 1, 2, ...
        3. Legacy single panel: VIRTUALIZOR_ENDPOINT / VIRTUALIZOR_API_KEY / VIRTUALIZOR_API_PASSWORD

    Returns:
        list: panel dicts in search order
    """
    verify_default = get_env_bool('VIRTUALIZOR_VERIFY_SSL', True)

    raw_json = os.getenv('VIRTUALIZOR_PANELS')
    if raw_json:
        try:
            panels = json.loads(raw_json)
            if isinstance(panels, list):
                return [{'verify_ssl': verify_default, **p} for p in panels if isinstance(p, dict) and p.get('host')]
            logger.error("❌ VIRTUALIZOR_PANELS must be a JSON list")
        except json.JSONDecodeError as e:
            logger.error(f"❌ VIRTUALIZOR_PANELS is not valid JSON: {e}")
        return []

    panels = []
    index = 1
    while os.getenv(f'VIRTUALIZOR_PANEL_{index}_HOST'):
        prefix = f'VIRTUALIZOR_PANEL_{index}_'
        panels.append({
            'name': os.getenv(prefix + 'NAME', f'panel-{index}'),
            'host': os.getenv(prefix + 'HOST'),
            'port': get_env_int(prefix + 'PORT', 4083),
            'protocol': os.getenv(prefix + 'PROTOCOL', 'https'),
            'api_key': os.getenv(prefix + 'API_KEY', ''),
            'api_pass': os.getenv(prefix + 'API_PASS', ''),
            'verify_ssl': get_env_bool(prefix + 'VERIFY_SSL', verify_default),
        })
        index += 1
    if panels:
        return panels

    endpoint = os.getenv('VIRTUALIZOR_ENDPOINT')
    if endpoint:
        protocol = 'https'
        host = endpoint
        if '://' in host:
            protocol, host = host.split('://', 1)
            # Panels only speak HTTPS on the end-user port
            if protocol == 'http':
                protocol = 'https'
        host = host.rstrip('/')
        port = 4083
        if ':' in host:
            host, port_text = host.rsplit(':', 1)
            port = int(port_text) if port_text.isdigit() else 4083
        return [{
            'name': 'default',
            'host': host,
            'port': port,
            'protocol': protocol,
            'api_key': os.getenv('VIRTUALIZOR_API_KEY', ''),
            'api_pass': os.getenv('VIRTUALIZOR_API_PASSWORD', ''),
            'verify_ssl': verify_default,
        }]

    return []
