"""Project error hierarchy."""

from __future__ import annotations


class ChatBridgeError(Exception):
    """Base error."""


class InvalidRequestError(ChatBridgeError, ValueError):
    """Raised when the inbound request body is malformed."""


class UnsupportedRoleError(ChatBridgeError):
    """Raised when a chat message carries a role the converter cannot map."""

    def __init__(self, role: object, index: int | None = None) -> None:
        self.role = role
        self.index = index
        where = f" at messages[{index}]" if index is not None else ""
        super().__init__(f"unsupported message role{where}: {role!r}")


class UnsupportedToolKindError(ChatBridgeError):
    """Raised when a tool declaration cannot be converted; tools are never dropped silently."""

    def __init__(self, kind: object, detail: str = "") -> None:
        self.kind = kind
        message = f"unsupported tool type: {kind!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class BackendInvocationError(ChatBridgeError):
    """Backend call failed; ``status_code`` is set when the backend answered with an HTTP error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SerializationFailure(ChatBridgeError):
    """Raised inside safe_json when a value cannot be rendered; never escapes it."""
