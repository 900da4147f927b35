"""
Reply Processing Pipeline.

Runs one fetched message through:
1. Sender check
2. Body normalization
3. Field extraction
4. Identity resolution
5. Submission update

Every message ends as exactly one ProcessingOutcome: processed, skipped
(with a reason) or errored (with a reason). Store failures are classified
here; anything else propagates to the mailbox session.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from lender_inbox.errors import StoreError
from lender_inbox.services.db_service import SubmissionStore
from lender_inbox.services.identity_resolver import Resolution, resolve_identity
from lender_inbox.services.imap_client import InboundMessage
from lender_inbox.services.regex_extractor import ExtractedFields, extract_fields
from lender_inbox.services.submission_updater import (
    DEFAULT_BODY_MAX_CHARS,
    SKIP_NO_SUBMISSION,
    apply_reply,
)
from lender_inbox.services.text_cleaner import normalize_body

logger = logging.getLogger(__name__)

SKIP_NO_SENDER = "no from address"


class ProcessingStatus(str, Enum):
    """Stage reached by a message."""
    PENDING = "pending"
    CLEANED = "cleaned"
    EXTRACTED = "extracted"
    RESOLVED = "resolved"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    ERRORED = "errored"


TERMINAL_STATUSES = frozenset({
    ProcessingStatus.PROCESSED,
    ProcessingStatus.SKIPPED,
    ProcessingStatus.ERRORED,
})


@dataclass
class ProcessingOutcome:
    """Result for one message, reported in the run summary."""
    uid: str
    status: ProcessingStatus
    reason: Optional[str] = None
    sender: Optional[str] = None
    application_id: Optional[str] = None
    lender_id: Optional[str] = None
    submission_id: Optional[int] = None
    fields: Optional[ExtractedFields] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "uid": self.uid,
            "status": self.status.value,
            "reason": self.reason,
            "from": self.sender,
            "applicationId": self.application_id,
            "lenderId": self.lender_id,
            "submissionId": self.submission_id,
        }
        if self.fields is not None:
            extracted = self.fields.to_dict()
            data.update({
                "offered_amount": extracted["offered_amount"],
                "factor_rate": extracted["factor_rate"],
                "terms": extracted["terms"],
            })
        return data


@dataclass
class PipelineState:
    """State object passed through pipeline stages."""
    message: InboundMessage
    status: ProcessingStatus = ProcessingStatus.PENDING
    body: str = ""
    fields: ExtractedFields = field(default_factory=ExtractedFields)
    extracted: bool = False
    resolution: Optional[Resolution] = None
    submission_id: Optional[int] = None
    reason: Optional[str] = None

    def finish(self, status: ProcessingStatus, reason: Optional[str] = None) -> "PipelineState":
        self.status = status
        self.reason = reason
        return self

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_outcome(self) -> ProcessingOutcome:
        resolution = self.resolution or Resolution()
        return ProcessingOutcome(
            uid=self.message.uid,
            status=self.status,
            reason=self.reason,
            sender=self.message.sender or None,
            application_id=resolution.application_id or self.fields.application_id,
            lender_id=resolution.lender_id,
            submission_id=self.submission_id,
            fields=self.fields if self.extracted else None,
        )


def filter_sender(state: PipelineState) -> PipelineState:
    """Node 1: a message without a sender address cannot be attributed."""
    if not state.message.sender:
        return state.finish(ProcessingStatus.SKIPPED, SKIP_NO_SENDER)
    return state


def clean_text_node(state: PipelineState, quote_boundary: bool = True) -> PipelineState:
    """Node 2: raw message → plain-text body (never fails)."""
    if state.done:
        return state
    state.body = normalize_body(state.message.raw, quote_boundary=quote_boundary)
    state.status = ProcessingStatus.CLEANED
    return state


def extract_node(state: PipelineState) -> PipelineState:
    """Node 3: regex field extraction (never fails)."""
    if state.done:
        return state
    state.fields = extract_fields(state.body)
    state.extracted = True
    state.status = ProcessingStatus.EXTRACTED
    return state


def resolve_node(
    state: PipelineState,
    store: SubmissionStore,
    mailbox_applications: FrozenSet[str] = frozenset(),
) -> PipelineState:
    """Node 4: work out which submission the reply belongs to."""
    if state.done:
        return state

    try:
        resolution = resolve_identity(state.message.sender, state.fields, store)
    except StoreError as e:
        return state.finish(ProcessingStatus.ERRORED, f"lender lookup failed: {e}")

    state.resolution = resolution
    if not resolution.resolved:
        return state.finish(ProcessingStatus.SKIPPED, resolution.reason)

    known = {a.lower() for a in mailbox_applications if a}
    if known and resolution.application_id not in known:
        logger.info(
            f"UID {state.message.uid}: application {resolution.application_id} "
            f"is not configured on this mailbox"
        )

    state.status = ProcessingStatus.RESOLVED
    return state


def update_node(
    state: PipelineState,
    store: SubmissionStore,
    max_chars: int = DEFAULT_BODY_MAX_CHARS,
) -> PipelineState:
    """Node 5: the single write. Failures are reported, never retried."""
    if state.done:
        return state

    resolution = state.resolution
    try:
        submission_id = apply_reply(
            store,
            resolution.application_id,
            resolution.lender_id,
            state.fields,
            state.body,
            provider_message_id=state.message.provider_message_id,
            received_at=state.message.received_at,
            max_chars=max_chars,
        )
    except StoreError as e:
        return state.finish(ProcessingStatus.ERRORED, f"update lender_submissions failed: {e}")

    if submission_id is None:
        return state.finish(ProcessingStatus.SKIPPED, SKIP_NO_SUBMISSION)

    state.submission_id = submission_id
    return state.finish(ProcessingStatus.PROCESSED)


def run_pipeline(
    message: InboundMessage,
    store: SubmissionStore,
    quote_boundary: bool = True,
    max_chars: int = DEFAULT_BODY_MAX_CHARS,
    mailbox_applications: FrozenSet[str] = frozenset(),
) -> ProcessingOutcome:
    """
    Run the full reply processing pipeline for one message.

    Args:
        message: Fetched message
        store: Lender/submission store
        quote_boundary: Honour the "On ... wrote:" cut in fallback cleanup
        max_chars: Cap on the stored reply body
        mailbox_applications: Application ids configured on the mailbox

    Returns:
        ProcessingOutcome for the message
    """
    state = PipelineState(message=message)

    state = filter_sender(state)
    state = clean_text_node(state, quote_boundary)
    state = extract_node(state)
    state = resolve_node(state, store, mailbox_applications)
    state = update_node(state, store, max_chars)

    return state.to_outcome()
