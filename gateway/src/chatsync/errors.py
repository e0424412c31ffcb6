from __future__ import annotations


class ChatError(Exception):
    """Base class for failures reported back to the view layer."""

    code = "error"


class InvalidTarget(ChatError):
    code = "invalid_target"


class InvalidMessage(ChatError):
    code = "invalid_message"


class Unavailable(ChatError):
    code = "unavailable"


class NotFound(ChatError):
    code = "not_found"


class AddressTaken(ChatError):
    code = "address_taken"
