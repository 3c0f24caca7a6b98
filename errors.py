from http import HTTPStatus


class LibraryError(Exception):
    code = "Error"
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    code = "ValidationError"
    http_status = HTTPStatus.BAD_REQUEST


class InvalidState(LibraryError):
    code = "InvalidState"
    http_status = HTTPStatus.CONFLICT


class InsufficientCopies(LibraryError):
    code = "InsufficientCopies"
    http_status = HTTPStatus.CONFLICT


class Unauthorized(LibraryError):
    code = "Unauthorized"
    http_status = HTTPStatus.FORBIDDEN


class NotFound(LibraryError):
    code = "NotFound"
    http_status = HTTPStatus.NOT_FOUND


class Conflict(LibraryError):
    code = "Conflict"
    http_status = HTTPStatus.CONFLICT


class InfrastructureError(LibraryError):
    code = "Infrastructure"
    http_status = HTTPStatus.INTERNAL_SERVER_ERROR


def result(success, message, data=None, error=None):
    payload = {"success": success, "message": message}
    if data is not None:
        payload["data"] = data
    if error is not None:
        payload["error"] = error
    return payload
