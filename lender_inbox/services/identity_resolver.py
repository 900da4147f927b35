"""
Identity resolution for lender replies.

Decides which (application, lender) pair a reply belongs to:
- the application id always comes from the body; without it nothing happens
- a Lender ID embedded in the body is authoritative
- otherwise the envelope sender is looked up in the lender directory, and
  only an unambiguous single match is accepted
"""

import logging
from dataclasses import dataclass
from typing import Optional

from lender_inbox.services.db_service import SubmissionStore
from lender_inbox.services.regex_extractor import ExtractedFields

logger = logging.getLogger(__name__)

SKIP_NO_APPLICATION_ID = "no applicationId"
SKIP_NO_LENDER = "no lender matched"
SKIP_AMBIGUOUS_LENDER = "ambiguous lender match"


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one reply; reason is set when it failed."""
    application_id: Optional[str] = None
    lender_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.reason is None and bool(self.application_id and self.lender_id)


def resolve_lender_id(sender: str, body_lender_id: Optional[str], store: SubmissionStore) -> Resolution:
    """
    Resolve the lender only.

    Store failures propagate as StoreError; the caller classifies them.
    """
    if body_lender_id:
        _check_sender_matches(sender, body_lender_id, store)
        return Resolution(lender_id=body_lender_id)

    matches = store.find_lender_ids_by_email(sender)
    if not matches:
        return Resolution(reason=SKIP_NO_LENDER)
    if len(set(matches)) > 1:
        logger.info(f"Sender {sender} matches {len(matches)} lenders, not guessing")
        return Resolution(reason=SKIP_AMBIGUOUS_LENDER)

    return Resolution(lender_id=str(matches[0]).lower())


def resolve_identity(sender: str, fields: ExtractedFields, store: SubmissionStore) -> Resolution:
    """
    Resolve the (application_id, lender_id) pair for a reply.

    Args:
        sender: Envelope sender address
        fields: Values extracted from the body
        store: Lender directory

    Returns:
        Resolution; resolved is False when the reply must be skipped
    """
    if not fields.application_id:
        return Resolution(reason=SKIP_NO_APPLICATION_ID)

    lender = resolve_lender_id(sender, fields.lender_id, store)
    if lender.reason:
        return Resolution(application_id=fields.application_id, reason=lender.reason)

    return Resolution(application_id=fields.application_id, lender_id=lender.lender_id)


def _check_sender_matches(sender: str, lender_id: str, store: SubmissionStore) -> None:
    # Informational only: the embedded id wins even when the sender differs
    if not sender:
        return
    contacts = store.find_lender_emails([lender_id])
    contact = next(iter(contacts.values()), None)
    if contact and contact.strip().lower() != sender.strip().lower():
        logger.info(f"Reply for lender {lender_id} came from {sender}, contact on file is {contact}")
