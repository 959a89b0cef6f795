# Overview: Domain error taxonomy shared by services and routes.

"""
Every error raised on purpose by the order engine derives from DukaError.

Routes translate a DukaError into `{"error": message, "details": {...}}`
with the class's status_code. Anything else is an unexpected failure and is
answered as a 500 after logging.
"""

from __future__ import annotations


class DukaError(Exception):
    """Base class for domain errors."""
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(DukaError):
    """400-level input problem."""
    status_code = 400


class NotFound(DukaError):
    """Referenced customer, supplier, product, order or payment attempt is missing."""
    status_code = 404


class ConflictError(DukaError):
    """409-level business rule conflict."""
    status_code = 409


class RetryableConflict(ConflictError):
    """Conflict that is resolved by rolling back and running the unit of work again."""
    retryable = True


class OrderNumberConflict(RetryableConflict):
    """Another transaction took the generated order number first."""


class InsufficientStock(ConflictError):
    def __init__(self, product, available: int, required: int):
        name = getattr(product, "name", None) or f"product {getattr(product, 'id', product)}"
        super().__init__(
            f"Insufficient stock for {name}. Available: {available}, Required: {required}",
            details={
                "product_id": getattr(product, "id", product),
                "product_name": getattr(product, "name", None),
                "available": available,
                "required": required,
            },
        )


class InvalidTransition(ConflictError):
    def __init__(self, entity: str, from_status: str, to_status: str, reason: str | None = None):
        message = f"Cannot move {entity} from '{from_status}' to '{to_status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            details={"entity": entity, "from_status": from_status, "to_status": to_status},
        )


class GatewayError(DukaError):
    """The payment gateway answered, but refused or returned garbage."""
    status_code = 502


class TransientGatewayError(GatewayError):
    """Network failure or timeout talking to the payment gateway; safe to retry."""
    status_code = 503
    retryable = True


class InternalError(DukaError):
    status_code = 500
