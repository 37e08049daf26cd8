"""Error taxonomy shared by the services and the HTTP layer.

Every error carries a stable ``code`` for clients and the HTTP status the
error handler middleware renders it with. Only ``TransientStorageError`` is
ever retried automatically.
"""


class PharmaLinkError(Exception):
    code = "ERROR"
    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PharmaLinkError):
    code = "VALIDATION_ERROR"
    status_code = 422
    default_message = "Invalid input"


class NotFoundError(PharmaLinkError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class ChannelNotFoundError(NotFoundError):
    default_message = "Chat not found"


class RequestClosedError(PharmaLinkError):
    code = "REQUEST_CLOSED"
    status_code = 409
    default_message = "This request has expired or was closed"


class DuplicateResponseError(PharmaLinkError):
    code = "DUPLICATE_RESPONSE"
    status_code = 409
    default_message = "You have already responded to this request"


class TransientStorageError(PharmaLinkError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
    default_message = "The service is temporarily unavailable, please try again"
