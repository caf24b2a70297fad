"""
Intake sources.

A source lists the item IDs currently waiting in a mailbox and fetches a
single item as an IntakeDocument. Item IDs must be stable: the lease
queue keys on (connection_id, item_id).
"""

import email
import logging
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.policy import default as default_policy
from pathlib import Path
from typing import Optional

from ..schemas import IntakeDocument
from ..state_store import ConnectionRecord

logger = logging.getLogger(__name__)

EML_DIRECTORY = "eml_dir"


class SourceError(Exception):
    """A source could not list or fetch items."""

    pass


class MailboxSource(ABC):
    """Base class for intake sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Source name for logging."""
        pass

    @abstractmethod
    def list_item_ids(self, limit: Optional[int] = None) -> list[str]:
        """
        List item IDs waiting in the mailbox, oldest first.

        Processed items may still be listed; the poller filters them through
        the lease queue before applying its batch size. `limit` caps the
        listing when given.

        Raises:
            SourceError: the mailbox is unreachable
        """
        pass

    @abstractmethod
    def fetch(self, item_id: str) -> IntakeDocument:
        """
        Fetch one item.

        Raises:
            SourceError: the item cannot be read
        """
        pass


def _is_pdf(part: EmailMessage) -> bool:
    filename = (part.get_filename() or "").lower()
    return part.get_content_type() == "application/pdf" or filename.endswith(".pdf")


def parse_eml(data: bytes, item_id: Optional[str] = None) -> IntakeDocument:
    """Build an IntakeDocument from raw RFC 822 bytes (first PDF attachment only)."""
    message = email.message_from_bytes(data, policy=default_policy)

    body = ""
    body_part = message.get_body(preferencelist=("plain", "html"))
    if body_part is not None:
        body = body_part.get_content()

    pdf_bytes = None
    pdf_name = None
    for part in message.iter_attachments():
        if _is_pdf(part):
            pdf_bytes = part.get_payload(decode=True)
            pdf_name = part.get_filename()
            break

    return IntakeDocument(
        subject=str(message.get("Subject", "")),
        sender=str(message.get("From", "")),
        body=body.strip(),
        attachment_pdf=pdf_bytes,
        attachment_filename=pdf_name,
        source_item_id=item_id,
    )


class EmlDirectorySource(MailboxSource):
    """
    Reads `.eml` files from a directory.

    The file name is the item ID. Files are never moved or deleted; the
    lease queue keeps processed items from being picked up again.
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    @property
    def name(self) -> str:
        return f"eml:{self.directory}"

    def list_item_ids(self, limit: Optional[int] = None) -> list[str]:
        if not self.directory.is_dir():
            raise SourceError(f"Mailbox directory not found: {self.directory}")
        files = sorted(
            (p for p in self.directory.iterdir() if p.is_file() and p.suffix.lower() == ".eml"),
            key=lambda p: (p.stat().st_mtime, p.name),
        )
        return [p.name for p in files[:limit]]

    def fetch(self, item_id: str) -> IntakeDocument:
        path = self.directory / item_id
        if path.parent != self.directory:
            raise SourceError(f"Invalid item ID: {item_id}")
        try:
            data = path.read_bytes()
        except OSError as e:
            raise SourceError(f"Cannot read {path}: {e}") from e
        return parse_eml(data, item_id)


def create_source(connection: ConnectionRecord) -> MailboxSource:
    """Build the source for a connection."""
    if connection.source_type == EML_DIRECTORY:
        return EmlDirectorySource(connection.source_uri)
    raise ValueError(f"Unsupported source type: {connection.source_type}")
