"""
Status normalization for provider payloads

Providers report power state as strings, numeric codes, booleans or nested objects.
Payloads are first parsed into a StatusReading (a closed tagged type) and then mapped
onto the canonical PowerState set. Live status checks and background state sync both
go through normalize_status so they never disagree.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Set

logger = logging.getLogger(__name__)


class PowerState(Enum):
    """Canonical power states"""
    RUNNING = "running"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    BUSY = "busy"
    UNKNOWN = "unknown"


class ReadingKind(Enum):
    TEXT = "text"
    NUMBER = "number"
    FLAG = "flag"
    NESTED = "nested"
    RAW = "raw"


@dataclass(frozen=True)
class StatusReading:
    """
    One status value pulled out of a provider payload

    kind tells which field is meaningful: text for string tokens, number for
    numeric codes, flag for booleans. NESTED is a text/number reading found
    inside a status object; RAW means nothing recognizable was found.
    """
    kind: ReadingKind
    text: Optional[str] = None
    number: Optional[float] = None
    flag: Optional[bool] = None
    source: Any = None

    @property
    def token(self) -> Optional[str]:
        """Lowercased textual form, used for vocabulary lookup and logging"""
        if self.text is not None:
            return self.text
        if self.flag is not None:
            return 'true' if self.flag else 'false'
        if self.number is not None:
            return str(int(self.number)) if float(self.number).is_integer() else str(self.number)
        return None


RUNNING_TOKENS = {'online', 'running', 'active', 'on', 'started', 'up', '1', 'true', 'yes'}
STOPPED_TOKENS = {'offline', 'stopped', 'shutoff', 'shutdown', 'off', 'down', 'halted', 'poweroff', 'powered off', '0', 'false', 'no'}
SUSPENDED_TOKENS = {'suspended', 'locked', 'paused', '2'}
BUSY_TOKENS = {
    'installing', 'provisioning', 'pending', 'building', 'rebuilding', 'reinstalling',
    'starting', 'stopping', 'rebooting', 'restarting', 'migrating', 'creating', 'processing',
}

# Lifecycle tokens: no power state, but meaningful to order provisioning status
TERMINATED_TOKENS = {'terminated', 'cancelled', 'canceled', 'deleted', 'destroyed'}
FAILED_TOKENS = {'failed', 'error'}

# Keys searched, in order, when a payload is a dict
STATUS_KEYS = ('status', 'state', 'power_status', 'powerstatus', 'vps_status', 'server_status')
CONTAINER_KEYS = ('data', 'service', 'info', 'vps', 'vs', 'server', 'details')

_reported_unknown_tokens: Set[str] = set()


def _reading_from_scalar(value: Any, nested: bool = False) -> Optional[StatusReading]:
    if isinstance(value, bool):
        return StatusReading(ReadingKind.FLAG, flag=value, source=value)
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return StatusReading(ReadingKind.RAW, source=value)
        if not math.isfinite(number):
            return StatusReading(ReadingKind.RAW, source=value)
        kind = ReadingKind.NESTED if nested else ReadingKind.NUMBER
        return StatusReading(kind, number=number, source=value)
    if isinstance(value, str) and value.strip():
        kind = ReadingKind.NESTED if nested else ReadingKind.TEXT
        return StatusReading(kind, text=value.strip().lower(), source=value)
    return None


def _search(payload: Any, depth: int) -> Optional[StatusReading]:
    if depth > 4 or not isinstance(payload, dict):
        return None

    for key in STATUS_KEYS:
        if key not in payload:
            continue
        value = payload[key]
        if isinstance(value, dict):
            # {status: {state: 'running'}}
            inner = _search(value, depth + 1)
            if inner is not None:
                return StatusReading(ReadingKind.NESTED, text=inner.text, number=inner.number,
                                     flag=inner.flag, source=payload)
            continue
        reading = _reading_from_scalar(value, nested=depth > 0)
        if reading is not None:
            return reading

    for key in CONTAINER_KEYS:
        value = payload.get(key)
        if isinstance(value, dict):
            reading = _search(value, depth + 1)
            if reading is not None:
                return reading
    return None


def parse_status_payload(raw: Any) -> StatusReading:
    """Extract a StatusReading from any provider payload; never raises"""
    reading = _reading_from_scalar(raw)
    if reading is not None:
        return reading
    if isinstance(raw, dict):
        reading = _search(raw, 0)
        if reading is not None:
            return reading
    return StatusReading(ReadingKind.RAW, source=raw)


def _state_for_token(token: str) -> Optional[PowerState]:
    if token in RUNNING_TOKENS:
        return PowerState.RUNNING
    if token in STOPPED_TOKENS:
        return PowerState.STOPPED
    if token in SUSPENDED_TOKENS:
        return PowerState.SUSPENDED
    if token in BUSY_TOKENS:
        return PowerState.BUSY
    return None


def normalize_reading(reading: StatusReading) -> PowerState:
    """Map a parsed reading onto the canonical set"""
    if reading.kind == ReadingKind.FLAG:
        return PowerState.RUNNING if reading.flag else PowerState.STOPPED

    token = reading.token
    if token is None:
        return PowerState.UNKNOWN

    state = _state_for_token(token)
    if state is not None:
        return state

    if token not in TERMINATED_TOKENS and token not in FAILED_TOKENS and token not in _reported_unknown_tokens:
        _reported_unknown_tokens.add(token)
        logger.warning(f"⚠️ STATUS: Unrecognized provider status token {token!r} mapped to unknown")
    return PowerState.UNKNOWN


def normalize_status(raw: Any) -> PowerState:
    """Canonical power state for any raw provider payload; unknown vocabulary yields UNKNOWN"""
    return normalize_reading(parse_status_payload(raw))


def provisioning_status_for(power_state: PowerState, raw_token: Optional[str] = None) -> Optional[str]:
    """
    Order provisioning status implied by a provider status

    Returns None when the current provisioning status should be left unchanged.
    """
    token = (raw_token or '').strip().lower()
    if token in TERMINATED_TOKENS:
        return 'terminated'
    if token in FAILED_TOKENS:
        return 'failed'

    if power_state in (PowerState.RUNNING, PowerState.STOPPED):
        # A stopped server is still provisioned
        return 'active'
    if power_state == PowerState.SUSPENDED:
        return 'suspended'
    if power_state == PowerState.BUSY:
        return 'provisioning'
    return None
