"""
Error taxonomy for directory and relay operations.

Every error carries a stable ``code`` (the class name) and the HTTP status
the API layer answers with. Nothing here is fatal to the process.
"""


class ChatError(Exception):
    """Base class for all server-side failures"""
    status_code = 400

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.__class__.__name__)
        self.detail = detail or self.__class__.__name__

    @property
    def code(self) -> str:
        return self.__class__.__name__


class ProtocolError(ChatError):
    """Malformed or unauthorized request; surfaced, never retried"""
    pass


class ResourceError(ChatError):
    """A recipient cannot currently take delivery"""
    status_code = 409


class UserExists(ProtocolError):
    status_code = 409


class UserUnknown(ProtocolError):
    status_code = 404


class UnknownCreator(ProtocolError):
    status_code = 400


class MalformedKey(ProtocolError):
    status_code = 400


class PrekeyNotFound(ProtocolError):
    status_code = 404


class RecipientUnknown(ProtocolError):
    status_code = 404


class GroupExists(ProtocolError):
    status_code = 409


class GroupNotFound(ProtocolError):
    status_code = 404


class AlreadyMember(ProtocolError):
    status_code = 409


class NotMember(ProtocolError):
    status_code = 404


class Forbidden(ProtocolError):
    status_code = 403


class RecipientNoPrekey(ResourceError):
    pass


class QueueFull(ResourceError):
    status_code = 429
