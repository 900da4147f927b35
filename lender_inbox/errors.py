"""Exception types raised by the reply listener."""


class ReplyIngestError(Exception):
    """Base class for listener errors."""


class MailboxConnectionError(ReplyIngestError):
    """Connect, TLS, login or folder selection failed."""


class MailboxProtocolError(ReplyIngestError):
    """A search, fetch or flag command failed on an open connection."""


class StoreError(ReplyIngestError):
    """The lender/submission store could not be read or written."""
