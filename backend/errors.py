"""Error hierarchy shared by the sync stack, the session stack and the client.

Every failure the studio surfaces falls into one of five families:

* transport: the remote server cannot be reached (``ServerUnreachableError``)
* protocol: a frame or payload is malformed (``ProtocolError``)
* conflict: the server refuses because of session state (409 / 429)
* application: any other non-2xx response (``ApiError``)
* consistency: a patch would break the flow's node/edge invariants
"""

from __future__ import annotations


class StudioError(Exception):
    """Base for all studio errors."""


class ServerUnreachableError(StudioError):
    """Connection refused, reset or timed out."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(f"Server unreachable: {detail}" if detail else "Server unreachable")


class ProtocolError(StudioError):
    """A frame or response body could not be interpreted."""


class ConsistencyError(StudioError):
    """A patch would leave the flow with invalid nodes or edges."""

    def __init__(self, issues: list[str]) -> None:
        self.issues = issues
        super().__init__("; ".join(issues) or "inconsistent flow")


class ApiError(StudioError):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}: {body}")


class NotFoundError(ApiError):
    """404 from the server."""


class ConflictError(ApiError):
    """The request conflicts with the current session state."""


class SessionBusyError(ConflictError):
    """409: the session is still processing the previous message."""

    def __init__(self, body: str = "") -> None:
        super().__init__(409, body)


class SessionLimitError(ConflictError):
    """429 or local pool cap: no more interactive sessions may be created."""

    def __init__(self, body: str = "", limit: int | None = None) -> None:
        self.limit = limit
        super().__init__(429, body)


def error_for_status(status_code: int, body: str = "") -> ApiError:
    """Map a non-2xx status to the most specific error type."""
    if status_code == 404:
        return NotFoundError(404, body)
    if status_code == 409:
        return SessionBusyError(body)
    if status_code == 429:
        return SessionLimitError(body)
    return ApiError(status_code, body)


def user_message(exc: BaseException) -> str:
    """Return the short message shown to the user for an error."""
    if isinstance(exc, SessionBusyError):
        return "Previous message still processing. Please wait."
    if isinstance(exc, SessionLimitError):
        return "Session limit reached. Close a session before opening a new one."
    if isinstance(exc, ServerUnreachableError):
        return "Server unreachable"
    if isinstance(exc, ApiError):
        return f"HTTP {exc.status_code}: {exc.body}"
    return str(exc) or exc.__class__.__name__
