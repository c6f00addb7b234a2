# app/core/dispatch/errors.py
"""
Typed errors for the dispatch pipeline.

Each error carries the scope it aborts.  The engine catches them at
that scope and nowhere wider:

- ``StoreUnavailable``    -> current cycle (or current recipient when raised
                             while resolving endpoints)
- ``TransportFailure``    -> one notification's multicast call
- ``EndpointInvalid``     -> one token (classification only, never raised
                             out of the transport)
- ``ConfigurationError``  -> whole cycle becomes a no-op
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch errors."""

    def __init__(self, detail: str = "Dispatch error"):
        self.detail = detail
        super().__init__(detail)


class StoreUnavailable(DispatchError):
    """Notification or endpoint store could not be read or written."""

    def __init__(self, detail: str = "Store unavailable", *, operation: str | None = None):
        self.operation = operation
        super().__init__(detail)


class TransportFailure(DispatchError):
    """The multicast call failed as a whole (no per-token results)."""

    def __init__(self, detail: str = "Transport failure", *, code: str | None = None):
        self.code = code
        super().__init__(detail)


class EndpointInvalid(DispatchError):
    """A single token was rejected permanently by the push service."""

    def __init__(self, token: str, detail: str = "Endpoint invalid"):
        self.token = token
        super().__init__(detail)


class ConfigurationError(DispatchError):
    """Transport credentials are missing or unusable."""
