"""
Debug endpoints for checking reply parsing without touching the database.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from lender_inbox.config import get_settings
from lender_inbox.services.regex_extractor import extract_fields
from lender_inbox.services.text_cleaner import clean_email_body, normalize_body

router = APIRouter(prefix="/debug", tags=["Debug"])


class ExtractRequest(BaseModel):
    """Either a full RFC822 source (raw) or an already plain body (text)."""
    raw: Optional[str] = None
    text: Optional[str] = None


@router.post("/extract")
def extract_from_reply(payload: ExtractRequest):
    """
    Run body normalization and field extraction on a posted reply.

    Returns:
        dict: The normalized body (first 2000 chars) and the extracted fields
    """
    settings = get_settings()

    if payload.raw:
        body = normalize_body(payload.raw, quote_boundary=settings.quote_boundary_enabled)
    elif payload.text:
        body = clean_email_body(payload.text, quote_boundary=settings.quote_boundary_enabled)
    else:
        raise HTTPException(status_code=422, detail="Provide either 'raw' or 'text'")

    fields = extract_fields(body)

    return {
        "body": body[:2000] + "..." if len(body) > 2000 else body,
        "fields": fields.to_dict(),
    }
