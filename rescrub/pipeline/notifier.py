"""
Outbound notification collaborator.

The core only hands ``OutboundMessage`` objects to a ``Notifier``; SMTP
delivery lives behind that interface. Transient failures are retried with
exponential backoff, persistent ones surface as ``DeliveryError``.
"""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from rescrub.config import Settings, settings
from rescrub.exceptions import TransientDeliveryError
from rescrub.schemas import OutboundMessage

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    def send(self, message: OutboundMessage) -> str:
        """Deliver ``message``; returns the provider message id.

        Raises ``TransientDeliveryError`` when a retry may succeed and
        ``DeliveryError`` when it will not.
        """


class LoggingNotifier(Notifier):
    """Development notifier: records messages in memory and logs metadata only."""

    def __init__(self):
        self.outbox: list[OutboundMessage] = []

    def send(self, message: OutboundMessage) -> str:
        provider_id = f"log-{uuid.uuid4()}"
        self.outbox.append(message)
        logger.info(
            "Outbound %s for request %s to %s (%s)",
            message.kind.value, message.request_id, message.recipient, provider_id,
        )
        return provider_id


def send_with_retry(notifier: Notifier, message: OutboundMessage, cfg: Settings = settings) -> str:
    """Send through ``notifier``, retrying transient failures with exponential backoff."""
    backoff = cfg.NOTIFY_BACKOFF_SECONDS
    for attempt in Retrying(
        stop=stop_after_attempt(cfg.NOTIFY_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=backoff, min=0, max=backoff * 8),
        retry=retry_if_exception_type(TransientDeliveryError),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.warning(
                    "Retrying %s for request %s (attempt %d)",
                    message.kind.value, message.request_id, attempt.retry_state.attempt_number,
                )
            return notifier.send(message)
