"""
Applies a parsed lender reply to its submission row.

One call = one write attempt, never retried. Offer fields that were not found
in the reply leave the stored value untouched, so re-applying the same reply
always lands on the same row state.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from lender_inbox.models.lender_submission import SubmissionStatus
from lender_inbox.services.db_service import SubmissionStore
from lender_inbox.services.regex_extractor import ExtractedFields

logger = logging.getLogger(__name__)

DEFAULT_BODY_MAX_CHARS = 10000

SKIP_NO_SUBMISSION = "no submission matched"


def truncate_body(text: str, max_chars: int = DEFAULT_BODY_MAX_CHARS) -> Optional[str]:
    """Cap stored reply text; empty bodies are stored as NULL."""
    if not text:
        return None
    return text[:max_chars]


def build_update(
    fields: ExtractedFields,
    body: str,
    provider_message_id: Optional[str],
    received_at: Optional[datetime],
    max_chars: int = DEFAULT_BODY_MAX_CHARS,
) -> dict:
    """Column values for a "responded" update."""
    response_date = received_at or datetime.now(timezone.utc)
    # Stored naive, in UTC
    if response_date.tzinfo is not None:
        response_date = response_date.astimezone(timezone.utc).replace(tzinfo=None)

    values = {
        "status": SubmissionStatus.RESPONDED.value,
        "response": truncate_body(body, max_chars),
        "response_date": response_date,
        "provider_message_id": str(provider_message_id) if provider_message_id else None,
    }
    values.update(fields.offer_fields())
    return values


def apply_reply(
    store: SubmissionStore,
    application_id: str,
    lender_id: str,
    fields: ExtractedFields,
    body: str,
    provider_message_id: Optional[str] = None,
    received_at: Optional[datetime] = None,
    max_chars: int = DEFAULT_BODY_MAX_CHARS,
) -> Optional[int]:
    """
    Mark the (application_id, lender_id) submission as responded.

    Args:
        store: Submission store
        application_id: Resolved application id
        lender_id: Resolved lender id
        fields: Extracted offer fields (absent ones are not written)
        body: Normalized reply body
        provider_message_id: Message-ID header of the reply
        received_at: Message date; "now" when the message has none

    Returns:
        Id of the updated submission, or None when no row exists for the pair

    Raises:
        StoreError: The read or the write failed
    """
    submissions = store.find_submissions_for_application(application_id)
    target = next(
        (s for s in submissions if str(s["lender_id"]).lower() == lender_id.lower()),
        None,
    )
    if target is None:
        logger.info(f"No submission for application {application_id} / lender {lender_id}")
        return None

    values = build_update(fields, body, provider_message_id, received_at, max_chars)
    if not store.update_submission(target["id"], values):
        return None

    logger.info(
        f"Submission {target['id']} responded | app={application_id} lender={lender_id} "
        f"amount={fields.offered_amount} rate={fields.factor_rate} terms={fields.terms}"
    )
    return target["id"]
