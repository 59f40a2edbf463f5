"""
Core domain models for mailsync.

This module contains pure domain models (dataclasses) without any network,
filesystem or UI dependencies, plus their JSON conversions for the
cached-messages file.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple


@dataclass(slots=True, eq=False)
class Address:
    """An email address with an optional display name. Equality is on ``address`` only."""
    name: str = ""
    address: str = ""

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Address):
            return NotImplemented
        return self.address == other.address

    def __hash__(self) -> int:
        return hash(self.address)

    def display(self) -> str:
        return self.name or self.address

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "address": self.address}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Address":
        return cls(name=data.get("name") or "", address=data.get("address") or "")


def _addresses_to_json(addresses: List[Address]) -> List[Dict[str, str]]:
    return [a.to_dict() for a in addresses]


def _addresses_from_json(data: Optional[List[Dict[str, Any]]]) -> List[Address]:
    return [Address.from_dict(item) for item in (data or [])]


@dataclass(slots=True)
class Envelope:
    """Pre-parsed header summary as delivered by the IMAP server."""
    date: Optional[datetime] = None
    subject: str = ""
    from_: List[Address] = field(default_factory=list)
    sender: List[Address] = field(default_factory=list)
    reply_to: List[Address] = field(default_factory=list)
    to: List[Address] = field(default_factory=list)
    cc: List[Address] = field(default_factory=list)
    bcc: List[Address] = field(default_factory=list)
    in_reply_to: List[str] = field(default_factory=list)
    message_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat() if self.date else None,
            "subject": self.subject,
            "from": _addresses_to_json(self.from_),
            "sender": _addresses_to_json(self.sender),
            "reply_to": _addresses_to_json(self.reply_to),
            "to": _addresses_to_json(self.to),
            "cc": _addresses_to_json(self.cc),
            "bcc": _addresses_to_json(self.bcc),
            "in_reply_to": list(self.in_reply_to),
            "message_id": self.message_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        date = None
        if data.get("date"):
            try:
                date = datetime.fromisoformat(data["date"])
            except (TypeError, ValueError):
                date = None
        return cls(
            date=date,
            subject=data.get("subject") or "",
            from_=_addresses_from_json(data.get("from")),
            sender=_addresses_from_json(data.get("sender")),
            reply_to=_addresses_from_json(data.get("reply_to")),
            to=_addresses_from_json(data.get("to")),
            cc=_addresses_from_json(data.get("cc")),
            bcc=_addresses_from_json(data.get("bcc")),
            in_reply_to=list(data.get("in_reply_to") or []),
            message_id=data.get("message_id") or "",
        )


@dataclass(slots=True)
class CacheData:
    """
    One entry of a mailbox's cache index.

    ``filename`` is the maildir base key (without flag suffix); the maildir
    store resolves it to the concrete file.
    """
    envelope: Envelope = field(default_factory=Envelope)
    uid: int = 0
    filename: str = ""
    flags: Set[str] = field(default_factory=set)

    def is_read(self) -> bool:
        """Check if this message carries the \\Seen flag."""
        return '\\Seen' in self.flags

    def is_starred(self) -> bool:
        """Check if this message is starred/flagged."""
        return '\\Flagged' in self.flags

    def copy(self) -> "CacheData":
        return CacheData.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "envelope": self.envelope.to_dict(),
            "uid": self.uid,
            "filename": self.filename,
        }
        if self.flags:
            data["flags"] = sorted(self.flags)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheData":
        return cls(
            envelope=Envelope.from_dict(data.get("envelope") or {}),
            uid=int(data["uid"]),
            filename=str(data["filename"]),
            flags=set(data.get("flags") or []),
        )


@dataclass(slots=True, frozen=True)
class MailboxRef:
    """Identifies one mailbox of one account. Both fields may be arbitrary UTF-8."""
    account: str
    mailbox: str


@dataclass(slots=True)
class FetchedMessage:
    """A message yielded by the delta fetch: envelope plus raw header and text sections."""
    uid: int
    envelope: Envelope
    header: bytes = b""
    text: bytes = b""

    @property
    def raw(self) -> bytes:
        return self.header + self.text


@dataclass(slots=True)
class MailboxInfo:
    """One line of a LIST response."""
    name: str
    delimiter: Optional[str] = None
    attributes: Tuple[str, ...] = ()

    def has_attribute(self, attribute: str) -> bool:
        wanted = attribute.lower()
        return any(a.lower() == wanted for a in self.attributes)


@dataclass(slots=True)
class SelectInfo:
    """Mailbox state returned by SELECT."""
    name: str
    exists: int = 0
    uidvalidity: Optional[int] = None
