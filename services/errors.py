"""Error kinds raised by the service layer.

Each class carries the HTTP status the API answers with, so route handlers
never need to inspect messages.
"""


class ServiceError(Exception):
    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self):
        return {"error": self.message}


class InvalidToken(ServiceError):
    default_message = "Invalid invitation token"


class AlreadyAccepted(ServiceError):
    default_message = "This invitation has already been accepted. Please log in."


class Declined(ServiceError):
    default_message = "This invitation has been declined."


class DuplicateInvitation(ServiceError):
    status_code = 409
    default_message = "An invitation has already been sent to this email"


class AlreadyLinked(ServiceError):
    status_code = 409
    default_message = "This client is already linked to your account"


class AccountExists(ServiceError):
    status_code = 409
    default_message = "An account with this email already exists. Please log in instead."


class NotAuthorized(ServiceError):
    status_code = 403
    default_message = "Not authorized"


class NotFound(ServiceError):
    status_code = 404
    default_message = "Not found"


class InvalidTransition(ServiceError):
    default_message = "Invalid status change"


class TokenGenerationError(ServiceError):
    status_code = 500
    default_message = "Failed to generate unique invite token"
