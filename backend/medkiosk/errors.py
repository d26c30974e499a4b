class KioskError(Exception):
    """Base error carrying the HTTP status the edge API answers with."""

    status_code = 500
    code = "ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(KioskError):
    status_code = 404
    code = "NOT_FOUND"


class ValidationFailed(KioskError):
    status_code = 400
    code = "VALIDATION"


class AlreadyRecordedError(KioskError):
    status_code = 409
    code = "ALREADY_RECORDED"


class StoreError(KioskError):
    status_code = 500
    code = "STORE"
