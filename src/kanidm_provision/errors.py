"""Exceptions raised while provisioning a Kanidm instance.

Every error is fatal to a provisioning run. Safety across failures comes from
diffing before every write and from the additive-only tracking group, so a run
can simply be repeated after the cause has been fixed.
"""

from __future__ import annotations


class KanidmError(Exception):
    """Base exception for all provisioning errors."""

    def __init__(
        self, message: str, status_code: int | None = None, response: str | None = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class KanidmTransportError(KanidmError):
    """Network failure or unsuccessful HTTP status from the server."""

    pass


class KanidmAuthError(KanidmTransportError):
    """Authentication failed."""

    pass


class KanidmValidationError(KanidmError):
    """Declaration or remote data has an invalid shape or value."""

    pass


class KanidmNotFoundError(KanidmError):
    """An entity is missing from the current snapshot."""

    pass
