"""
Sync error taxonomy.

Every failure a sync operation can surface maps to one of these classes.
Routes never catch them individually: api/main.py converts any SyncError
into a JSON response using the class's status_code.

A Conflict is NOT an error. Conflicts are recorded as data and never fail
the enclosing push.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for sync failures."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message}


class AuthenticationFailure(SyncError):
    """Missing or invalid request signature. Always terminal."""

    status_code = 401


class ValidationFailure(SyncError):
    """Missing field, self-merge, invalid code, bad resolution value."""

    status_code = 400


class NotFound(SyncError):
    """Connection, person, code, conflict or merge log absent or not owned."""

    status_code = 404


class RemoteRejected(SyncError):
    """The counterpart answered with a non-success response."""

    status_code = 502

    def __init__(
        self,
        message: str,
        remote_status: Optional[int] = None,
        remote_body: Optional[str] = None,
    ):
        self.remote_status = remote_status
        self.remote_body = remote_body
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.remote_status is not None:
            data["remote_status"] = self.remote_status
        return data


class RemoteUnavailable(RemoteRejected):
    """The counterpart could not be reached (refused, timed out)."""
