# src/exceptions.py
from fastapi import HTTPException


class BillingError(HTTPException):
    """Base class. Carries a stable machine-readable code next to the message."""
    status_code = 400

    def __init__(self, message: str, code: str):
        super().__init__(status_code=self.status_code, detail={"code": code, "message": message})
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class BadRequestError(BillingError):
    status_code = 400


class NotFoundError(BillingError):
    status_code = 404


class ConflictError(BillingError):
    status_code = 409
