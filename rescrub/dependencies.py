"""
FastAPI dependencies for the pipeline components.
"""
from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session

from rescrub.database import get_db
from rescrub.exceptions import (
    ConcurrentUpdateError,
    DeliveryError,
    InvalidInputError,
    InvalidStateTransitionError,
    NotFoundError,
    RescrubError,
    SignatureValidationFailure,
)
from rescrub.pipeline.campaign import CampaignManager
from rescrub.pipeline.evidence import EvidenceCollector
from rescrub.pipeline.notifier import LoggingNotifier, Notifier

# Process-wide notifier; replace with an SMTP-backed Notifier in deployment
default_notifier: Notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    return default_notifier


def get_campaign(
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> CampaignManager:
    return CampaignManager(db, notifier=notifier)


def get_evidence(db: Session = Depends(get_db)) -> EvidenceCollector:
    return EvidenceCollector(db)


HTTP_STATUS = [
    (NotFoundError, 404),
    (InvalidInputError, 400),
    (InvalidStateTransitionError, 409),
    (ConcurrentUpdateError, 409),
    (SignatureValidationFailure, 422),
    (DeliveryError, 502),
]


def http_error(exc: RescrubError) -> HTTPException:
    """Pipeline error -> HTTPException"""
    for error_type, status_code in HTTP_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
