"""Error taxonomy for the placement engine.

Each error carries the HTTP status the API layer answers with. Expiry is not
an error: an expired run is auto-completed and reported as ``expired=True``.
"""


class PlacementError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(PlacementError):
    status_code = 404


class AccessDeniedError(PlacementError):
    status_code = 403


class InvalidStateError(PlacementError):
    status_code = 409


class OutOfOrderError(PlacementError):
    status_code = 409


class DuplicateAnswerError(PlacementError):
    status_code = 409


class ValidationError(PlacementError):
    status_code = 422
