from fastapi import status


class ChatError(Exception):
    """Base class for errors raised by the chat services."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidArgument(ChatError):
    """Malformed or out-of-range input."""

    status_code = status.HTTP_400_BAD_REQUEST


class PermissionDenied(ChatError):
    """Caller lacks the membership or admin state required."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidState(ChatError):
    """Operation not valid for the chatroom's kind."""

    status_code = status.HTTP_409_CONFLICT


class Conflict(ChatError):
    """Lost a uniqueness race. Recovered inside ChatService, never surfaced."""

    status_code = status.HTTP_409_CONFLICT
