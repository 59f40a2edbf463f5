"""
Mailbox name helpers for display and filtering.
"""
from mailsync import config
from mailsync.models import MailboxInfo
from mailsync.network.imap_parser import decode_modified_utf7


GMAIL_PREFIX = "[Gmail]/"

_RENAMES = {
    "INBOX": "Inbox",
    "Sent Mail": "Sent",
}

UNSELECTABLE_ATTRIBUTES = ("\\Noselect", "\\NonExistent")


def friendly_mailbox_name(name: str) -> str:
    """
    Convert a server mailbox name to the name shown to the user.

    Example:
        >>> friendly_mailbox_name("[Gmail]/Sent Mail")
        'Sent'
    """
    name = decode_modified_utf7(name)
    if name.upper() == "INBOX":
        return _RENAMES["INBOX"]
    if name.startswith(GMAIL_PREFIX):
        name = name[len(GMAIL_PREFIX):]
    return _RENAMES.get(name, name)


def should_skip(info: MailboxInfo) -> bool:
    """True for mailboxes that are never mirrored."""
    if info.name in config.SKIP_MAILBOXES:
        return True
    return any(info.has_attribute(attr) for attr in UNSELECTABLE_ATTRIBUTES)
