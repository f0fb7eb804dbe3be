"""
Error taxonomy for the VPS lifecycle orchestrator
Every failure that crosses a service boundary is one of these kinds
"""

from typing import Any, Dict, List, Optional


class OrchestratorError(Exception):
    """Base class for structured orchestrator failures"""

    kind = 'orchestrator_error'
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.message, 'error_type': self.kind, 'retryable': self.retryable}


class ProviderUnavailable(OrchestratorError):
    """Network error, timeout or 5xx from an upstream provider - transient"""

    kind = 'provider_unavailable'
    retryable = True

    def __init__(self, provider: str, message: str, searched_panels: Optional[List[str]] = None,
                 panel_errors: Optional[Dict[str, str]] = None):
        super().__init__(f"{provider} unavailable: {message}")
        self.provider = provider
        self.detail = message
        self.searched_panels = list(searched_panels) if searched_panels is not None else None
        self.panel_errors = dict(panel_errors or {})

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['provider'] = self.provider
        if self.searched_panels is not None:
            data['searched_panels'] = self.searched_panels
        if self.panel_errors:
            data['panel_errors'] = self.panel_errors
        return data


class ProviderRejected(OrchestratorError):
    """Provider understood the request and declined it"""

    kind = 'provider_rejected'

    def __init__(self, provider: str, message: str, raw: Any = None):
        super().__init__(message)
        self.provider = provider
        self.raw = raw

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['provider'] = self.provider
        return data


class ResolutionFailed(OrchestratorError):
    """No hypervisor panel owns the requested IP"""

    kind = 'resolution_failed'

    def __init__(self, ip: str, searched_panels: List[str], errors: Optional[Dict[str, str]] = None):
        self.ip = ip
        self.searched_panels = list(searched_panels)
        self.errors = dict(errors or {})
        if not self.searched_panels:
            message = f"No VM found for IP {ip}: no hypervisor panels configured"
        else:
            message = f"No VM found for IP {ip}, searched panels: [{', '.join(self.searched_panels)}]"
        if self.errors:
            failed = ', '.join(f"{name}: {err}" for name, err in self.errors.items())
            message += f" (panel errors: {failed})"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['ip'] = self.ip
        data['searched_panels'] = self.searched_panels
        if self.errors:
            data['panel_errors'] = self.errors
        return data


class ValidationFailed(OrchestratorError):
    """Caller error: bad action, missing IP, non-VPS order, weak password"""

    kind = 'validation_failed'


class ConflictFailed(OrchestratorError):
    """Duplicate pending request or an operation already in progress"""

    kind = 'conflict'


class NotFound(OrchestratorError):
    """Order or action request does not exist"""

    kind = 'not_found'


class PermissionDenied(OrchestratorError):
    """Caller does not own the order it is acting on"""

    kind = 'forbidden'
