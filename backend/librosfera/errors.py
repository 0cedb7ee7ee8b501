# Overview: Error taxonomy shared by services and routes; each kind maps to one HTTP status.

from __future__ import annotations


class FulfillmentError(Exception):
    """Base class for every error the fulfillment core surfaces to callers."""
    http_status = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": type(self).__name__,
            "details": self.details,
        }


class ValidationError(FulfillmentError):
    """400-level input problem."""
    http_status = 400


class Unauthorized(FulfillmentError):
    http_status = 401


class Forbidden(FulfillmentError):
    http_status = 403


class NotFound(FulfillmentError):
    http_status = 404


class UnknownReservation(NotFound):
    """A reservation_id was used without a prior Reserve."""


class InsufficientStock(FulfillmentError):
    http_status = 409


class ConcurrentModification(FulfillmentError):
    """Version conflict that survived the whole retry budget."""
    http_status = 409


class InvalidStateTransition(FulfillmentError):
    http_status = 409


class PriceDrift(FulfillmentError):
    """Cart lines carry prices that changed since they were added."""
    http_status = 409


class InsufficientBalance(FulfillmentError):
    http_status = 402


class InvalidCard(FulfillmentError):
    http_status = 400


class ReturnWindowExpired(FulfillmentError):
    http_status = 410
