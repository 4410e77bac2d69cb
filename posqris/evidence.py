import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from posqris.models import StatusEvidence, utcnow
from posqris.status import CanonicalStatus

logger = logging.getLogger(__name__)


def append_evidence(
    db: Session,
    intent_id: str,
    observed_status: CanonicalStatus,
    source: str,
    provider_status: str | None = None,
    raw_payload: dict[str, Any] | None = None,
    dedupe_key: str | None = None,
    now: datetime | None = None,
) -> StatusEvidence | None:
    """
    Record one status observation.

    Returns:
        The stored evidence, or None when ``dedupe_key`` was already seen
    """
    evidence = StatusEvidence(
        intent_id=intent_id,
        observed_status=observed_status.value,
        provider_status=provider_status,
        source=source,
        dedupe_key=dedupe_key,
        raw_payload=raw_payload,
        observed_at=now or utcnow(),
    )
    db.add(evidence)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            "Duplicate evidence ignored: intent_id=%s dedupe_key=%s", intent_id, dedupe_key
        )
        return None

    db.refresh(evidence)
    logger.info(
        "Evidence recorded: intent_id=%s source=%s observed=%s provider_status=%s",
        intent_id,
        source,
        observed_status.value,
        provider_status,
    )
    return evidence
