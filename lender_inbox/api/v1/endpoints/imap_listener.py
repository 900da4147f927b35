"""
IMAP Listener Endpoints

Manual trigger and status for the lender reply listener.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from lender_inbox.config import get_settings
from lender_inbox.errors import StoreError
from lender_inbox.services.db_service import SubmissionStore, get_store
from lender_inbox.services.imap_client import imap_tools_factory
from lender_inbox.services.listener import ReplyListener

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imap", tags=["IMAP Listener"])


def get_client_factory():
    """Mailbox client factory; overridden in tests."""
    return imap_tools_factory


@router.api_route("/process-now", methods=["GET", "POST"])
def process_now(
    store: SubmissionStore = Depends(get_store),
    client_factory=Depends(get_client_factory),
):
    """
    Check every configured mailbox once and apply any lender replies.

    Returns:
        dict: {success, processed, mailboxes, errors}. Per-mailbox failures
        are listed in errors; only a failure to read the mailbox
        configuration turns into HTTP 500.
    """
    listener = ReplyListener(store, client_factory, get_settings())
    try:
        summary = listener.run_once()
    except StoreError as e:
        logger.error(f"❌ process-now failed: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})

    return summary.to_dict()


@router.get("/status")
def listener_status(request: Request):
    """
    Daemon status: whether it runs and the last result per mailbox.
    """
    daemon = getattr(request.app.state, "listener_daemon", None)
    if daemon is None:
        return {"running": False, "mailboxes": {}}
    return daemon.status()
