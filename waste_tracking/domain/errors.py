from __future__ import annotations


class WasteTrackingError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(WasteTrackingError):
    status_code = 400


class NotFoundError(WasteTrackingError):
    status_code = 404


class InternalError(WasteTrackingError):
    status_code = 500
