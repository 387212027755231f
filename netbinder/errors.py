"""Error types surfaced by the attachment orchestrator and flow controller.

Every error carries an ErrorCategory so the HTTP layer (and the calling
node agent) can decide what to retry without parsing messages. None of
these are retried internally.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Categories of errors for structured error handling."""
    # Lookup errors
    NO_NETWORKS = "no_networks"  # Catalog is empty
    SANDBOX_NOT_FOUND = "sandbox_not_found"  # Runtime has no namespace for sandbox
    POD_NOT_FOUND = "pod_not_found"  # Pod object unknown to the registry

    # External command errors
    PLUGIN_FAILURE = "plugin_failure"  # CNI plugin returned an error
    SWITCH_COMMAND_FAILURE = "switch_command_failure"  # ovs-ofctl/ovs-vsctl failed
    DEADLINE_EXCEEDED = "deadline_exceeded"  # External call timed out

    # Input errors
    MALFORMED_ADDRESS = "malformed_address"
    MALFORMED_SELECTION = "malformed_selection"


class NetbinderError(Exception):
    """Base class for all netbinder errors."""

    category: ErrorCategory = ErrorCategory.PLUGIN_FAILURE

    def details(self) -> dict[str, Any]:
        """Machine-readable context for this error."""
        return {}

    def to_structured(self) -> StructuredError:
        return StructuredError(
            category=self.category,
            message=str(self),
            details=self.details(),
        )


class NoNetworksAvailable(NetbinderError):
    """Raised when no network definition is available for selection."""

    category = ErrorCategory.NO_NETWORKS

    def __init__(self, net_dir: str):
        self.net_dir = net_dir
        super().__init__(f"No CNI network available in {net_dir}")


class SandboxNotFound(NetbinderError):
    """Raised when the runtime cannot resolve a sandbox's network namespace."""

    category = ErrorCategory.SANDBOX_NOT_FOUND

    def __init__(self, sandbox_id: str, reason: str = ""):
        self.sandbox_id = sandbox_id
        self.reason = reason
        message = f"Sandbox {sandbox_id[:12]} not found"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class PodNotFound(NetbinderError):
    """Raised when a pod is unknown to the pod registry."""

    category = ErrorCategory.POD_NOT_FOUND

    def __init__(self, namespace: str, name: str):
        self.namespace = namespace
        self.name = name
        super().__init__(f"pod {name!r} namespace {namespace!r}: unable to find pod")


class PluginFailure(NetbinderError):
    """Raised when a CNI plugin invocation fails for one network."""

    category = ErrorCategory.PLUGIN_FAILURE

    def __init__(self, network: str, cause: str):
        self.network = network
        self.cause = cause
        super().__init__(f"Network {network}: {cause}")

    def details(self) -> dict[str, Any]:
        return {"network": self.network, "cause": self.cause}


class SwitchCommandFailure(NetbinderError):
    """Raised when a switch control command exits non-zero."""

    category = ErrorCategory.SWITCH_COMMAND_FAILURE

    def __init__(self, operation: str, cause: str):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Switch {operation} failed: {cause}")

    def details(self) -> dict[str, Any]:
        return {"operation": self.operation, "cause": self.cause}


class DeadlineExceeded(NetbinderError):
    """Raised when an external call does not finish within its timeout."""

    category = ErrorCategory.DEADLINE_EXCEEDED

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} did not complete within {timeout}s")

    def details(self) -> dict[str, Any]:
        return {"operation": self.operation, "timeout": self.timeout}


class MalformedAddress(NetbinderError):
    """Raised when a recorded pod address cannot be parsed."""

    category = ErrorCategory.MALFORMED_ADDRESS

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Malformed pod address: {value!r}")


class MalformedNetworkSelection(NetbinderError):
    """Raised when a pod's network list label/annotation is not a JSON array of names."""

    category = ErrorCategory.MALFORMED_SELECTION

    def __init__(self, source: str, value: str, reason: str = ""):
        self.source = source
        self.value = value
        message = f"Malformed network list in {source}: {value!r}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {"source": self.source, "value": self.value}


@dataclass
class StructuredError:
    """Structured error representation returned over HTTP.

    Attributes:
        category: The error category for classification
        message: Human-readable error message
        details: Additional error details (e.g., failing network)
        timestamp: When the error occurred
    """
    category: ErrorCategory
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


# HTTP status code per category, used by the API layer
HTTP_STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.NO_NETWORKS: 503,
    ErrorCategory.SANDBOX_NOT_FOUND: 404,
    ErrorCategory.POD_NOT_FOUND: 404,
    ErrorCategory.PLUGIN_FAILURE: 502,
    ErrorCategory.SWITCH_COMMAND_FAILURE: 502,
    ErrorCategory.DEADLINE_EXCEEDED: 504,
    ErrorCategory.MALFORMED_ADDRESS: 422,
    ErrorCategory.MALFORMED_SELECTION: 422,
}
