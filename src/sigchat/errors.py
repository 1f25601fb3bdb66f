"""Error taxonomy for sigchat.

Every failure that reaches a client is one of these. Each carries a short
machine-readable ``code`` and a user-facing ``message``; the HTTP layer maps
``status`` onto the response, the relay sends ``{"message": ...}`` back to
the originating connection only.
"""


class SigchatError(Exception):
    """Base class for errors that are safe to show to clients."""

    code = "error"
    status = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class InvalidIdentity(SigchatError):
    code = "invalid_identity"
    default_message = "Invalid identity key"


class ChallengeNotFound(SigchatError):
    code = "challenge_not_found"
    default_message = "No challenge found. Request a new challenge first."


class ChallengeExpired(SigchatError):
    code = "challenge_expired"
    default_message = "Challenge expired. Request a new challenge."


class InvalidSignature(SigchatError):
    code = "invalid_signature"
    status = 401
    default_message = "Invalid signature"


class NotAuthenticated(SigchatError):
    code = "not_authenticated"
    status = 401
    default_message = "Not authenticated"


class NotAMember(SigchatError):
    code = "not_a_member"
    status = 403
    default_message = "Not a member of this room"


class RoomNotFound(SigchatError):
    code = "room_not_found"
    status = 404
    default_message = "Room not found"


class MessageNotFound(SigchatError):
    code = "message_not_found"
    status = 404
    default_message = "Message not found"


class UserNotFound(SigchatError):
    code = "user_not_found"
    status = 404
    default_message = "User not found"


class InvalidRequest(SigchatError):
    code = "invalid_request"
    default_message = "Invalid request"


class StoreUnavailable(SigchatError):
    code = "store_unavailable"
    status = 503
    default_message = "Service temporarily unavailable"
