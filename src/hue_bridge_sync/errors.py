"""Error taxonomy shared by the sync engine, the API and the CLI."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence


class HueSyncError(Exception):
    """Base class for errors raised by the sync engine."""


class TransientTransportError(HueSyncError):
    """Timeout or connection failure talking to the bridge. Retried with backoff."""


class PartialResourceFailure(HueSyncError):
    """A secondary resource type could not be fetched; the cycle continues degraded."""

    def __init__(self, resource_type: str, message: str) -> None:
        super().__init__(message)
        self.resource_type = resource_type


class CoreResourceFailure(HueSyncError):
    """A core resource type could not be fetched; the whole cycle is aborted."""

    def __init__(self, resource_type: str, message: str) -> None:
        super().__init__(message)
        self.resource_type = resource_type


class ProtocolDecodeFailure(HueSyncError):
    """Malformed frame or payload received from the bridge."""


class CommandValidationFailure(HueSyncError, ValueError):
    """A write request had the wrong shape and was rejected before any network call."""


class CommandRejected(HueSyncError):
    """The bridge answered a command with an error."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        errors: Sequence[Mapping[str, Any]] = (),
    ) -> None:
        super().__init__(message)
        self.status = status
        self.errors = list(errors)

    @classmethod
    def from_response(cls, status: int, body: Any) -> "CommandRejected":
        """Build an error carrying the bridge's own description when it sent one."""

        errors = []
        if isinstance(body, Mapping) and isinstance(body.get("errors"), list):
            errors = [err for err in body["errors"] if isinstance(err, Mapping)]
        for err in errors:
            description = str(err.get("description") or "").strip()
            if description:
                return cls(description, status=status, errors=errors)
        return cls(f"Hue bridge returned status {status}", status=status, errors=errors)


class UnknownEntityError(HueSyncError, KeyError):
    """A command referenced a device, channel or scene that is not known."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Unknown entity"
