"""
Text Cleaning Module for Lender Replies.

Handles:
1. Parsed-message text (plain part first, HTML part second)
2. Fallback extraction from raw RFC822 source (header/body split)
3. HTML → Plain Text conversion
4. Noise removal (MIME headers, boundaries, base64 blobs, reply history)

normalize_body() is total: any input yields a string, possibly empty.
"""

import logging
import re
from email import policy
from email.message import Message
from email.parser import BytesParser
from typing import Optional, Union

from bs4 import BeautifulSoup, Comment

logger = logging.getLogger(__name__)

RawMessage = Union[bytes, bytearray, str, Message, None]

# Looks like markup if any opening tag is present
HTML_TAG_PATTERN = re.compile(r'<[a-z][\s\S]*>', re.IGNORECASE)

# Patterns for line-level noise removal (applied to stripped lines)
MIME_HEADER_PATTERN = re.compile(
    r'^(content-type|content-transfer-encoding|mime-version|x-[\w-]+|boundary)\s*:',
    re.IGNORECASE,
)
BOUNDARY_PATTERN = re.compile(r'^--[-A-Za-z0-9_]+')
FORWARDED_HEADER_PATTERN = re.compile(r'^(from|to|subject|date)\s*:', re.IGNORECASE)
BASE64_LINE_PATTERN = re.compile(r'^[A-Za-z0-9+/=]+$')
REPLY_BOUNDARY_PATTERN = re.compile(r'^on\s.+wrote:$', re.IGNORECASE)

BASE64_MIN_LENGTH = 80


def html_to_text(raw_html: str) -> str:
    """
    Convert HTML email content to plain text.

    Drops <script>/<style> blocks and comments, then all remaining tags.
    Entities (&nbsp;, &amp;, &lt;, &gt; and the rest) come back decoded.
    """
    if not raw_html:
        return ""

    soup = BeautifulSoup(raw_html, "html.parser")

    for tag in soup(['script', 'style']):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for br in soup.find_all('br'):
        br.replace_with('\n')

    text = soup.get_text(separator=' ')
    text = text.replace('\xa0', ' ')
    text = re.sub(r'[ \t]+', ' ', text)

    return text.strip()


def _decode_part(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if payload is None:
        payload = part.get_payload()
        return payload if isinstance(payload, str) else ""
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        # Unknown charset label
        return payload.decode('utf-8', errors='replace')


def _find_text_part(message: Message, subtype: str) -> Optional[Message]:
    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == 'attachment':
            continue
        if part.get_content_type() == f'text/{subtype}':
            return part
    return None


def parse_message(raw: RawMessage) -> Optional[Message]:
    """Parse raw RFC822 source into a Message (None for empty input)."""
    if raw is None:
        return None
    if isinstance(raw, Message):
        return raw
    if isinstance(raw, str):
        raw = raw.encode('utf-8', errors='replace')
    if not raw:
        return None
    return BytesParser(policy=policy.default).parsebytes(bytes(raw))


def parsed_message_text(raw: RawMessage) -> str:
    """
    Text of a structurally parsed message.

    Prefers the text/plain part; falls back to the text/html part stripped
    to text. Returns "" when the parse yields neither.
    """
    message = parse_message(raw)
    if message is None:
        return ""

    plain = _find_text_part(message, 'plain')
    if plain is not None:
        text = _decode_part(plain).strip()
        if text:
            return text

    html = _find_text_part(message, 'html')
    if html is not None:
        return html_to_text(_decode_part(html))

    return ""


def extract_text_from_source(raw: RawMessage) -> str:
    """
    Crude body extraction from raw source.

    Splits headers from body at the first blank line and strips markup when
    the body looks like HTML.
    """
    if raw is None:
        return ""
    if isinstance(raw, Message):
        source = raw.as_string()
    elif isinstance(raw, (bytes, bytearray)):
        source = bytes(raw).decode('utf-8', errors='replace')
    else:
        source = str(raw)

    parts = re.split(r'\r?\n\r?\n', source, maxsplit=1)
    body = parts[1] if len(parts) == 2 else source

    if HTML_TAG_PATTERN.search(body):
        return html_to_text(body)
    return body


def clean_email_body(text: str, quote_boundary: bool = True) -> str:
    """
    Remove MIME cruft and reply history, line by line.

    Args:
        text: Body text from extract_text_from_source()
        quote_boundary: Drop everything after an "On ... wrote:" line

    Returns:
        Cleaned text with at most one blank line between paragraphs
    """
    if not text:
        return ""

    cleaned_lines = []
    in_quoted_history = False

    for line in text.splitlines():
        stripped = line.strip()

        if MIME_HEADER_PATTERN.match(stripped):
            continue
        if BOUNDARY_PATTERN.match(stripped):
            continue
        if FORWARDED_HEADER_PATTERN.match(stripped):
            continue
        if len(stripped) > BASE64_MIN_LENGTH and BASE64_LINE_PATTERN.match(stripped):
            continue
        if quote_boundary and REPLY_BOUNDARY_PATTERN.match(stripped):
            in_quoted_history = True
            continue
        if stripped.startswith('>'):
            continue
        if in_quoted_history:
            continue

        cleaned_lines.append(line)

    return tidy_whitespace('\n'.join(cleaned_lines))


def tidy_whitespace(text: str) -> str:
    """Tabs/CR to spaces, 3+ newlines to 2, trimmed."""
    text = re.sub(r'[\t\r]+', ' ', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


def normalize_body(raw: RawMessage, quote_boundary: bool = True) -> str:
    """
    Full normalization: raw message → clean plain-text body.

    A structural parse wins when it yields text. Only when it does not is the
    manual header split + line cleanup used. Never raises.
    """
    try:
        text = parsed_message_text(raw)
    except Exception:
        logger.debug("Structured parse failed, falling back to raw split", exc_info=True)
        text = ""

    if text:
        return tidy_whitespace(text)

    try:
        return clean_email_body(extract_text_from_source(raw), quote_boundary=quote_boundary)
    except Exception:
        logger.warning("Could not extract a body from message source", exc_info=True)
        return ""
