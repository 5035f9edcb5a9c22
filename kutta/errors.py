from http import HTTPStatus


class KuttaError(Exception):
    """Request failure carrying the HTTP status it should be answered with."""

    status = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class BadRequest(KuttaError):
    status = HTTPStatus.BAD_REQUEST


class Forbidden(KuttaError):
    status = HTTPStatus.FORBIDDEN


class NotFound(KuttaError):
    status = HTTPStatus.NOT_FOUND


class MethodNotAllowed(KuttaError):
    status = HTTPStatus.METHOD_NOT_ALLOWED


class StorageError(KuttaError):
    status = HTTPStatus.INTERNAL_SERVER_ERROR


class RangeNotSatisfiable(KuttaError):
    status = HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE
