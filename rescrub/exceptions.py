"""
Error taxonomy of the deletion-request pipeline.
"""
from __future__ import annotations


class RescrubError(Exception):
    """Base class for pipeline errors."""


class InvalidInputError(RescrubError):
    """Inbound message content is empty or malformed."""


class NotFoundError(RescrubError):
    """A referenced record does not exist."""


class RequestNotFoundError(NotFoundError):
    def __init__(self, request_id: str):
        super().__init__(f"Deletion request not found: {request_id}")
        self.request_id = request_id


class InvalidStateTransitionError(RescrubError):
    def __init__(self, status: str, event: str):
        super().__init__(f"Transition {event} is not allowed from status {status}")
        self.status = status
        self.event = event


class ConcurrentUpdateError(RescrubError):
    """The request status changed between read and compare-and-set."""

    def __init__(self, request_id: str, expected: str):
        super().__init__(f"Request {request_id} is no longer in status {expected}")
        self.request_id = request_id
        self.expected = expected


class TamperSuspectedError(RescrubError):
    """Stored evidence no longer matches its digest.

    Returned by integrity checks rather than raised, so callers can route the
    record to audit review.
    """

    def __init__(self, record_id: str, reason: str):
        super().__init__(f"Evidence {record_id} failed integrity check: {reason}")
        self.record_id = record_id
        self.reason = reason


class SignatureValidationFailure(RescrubError):
    """Untrusted or malformed signature / certificate chain."""


class DeliveryError(RescrubError):
    """Outbound notification could not be delivered."""


class TransientDeliveryError(DeliveryError):
    """Temporary delivery failure, safe to retry."""
