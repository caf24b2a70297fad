"""
Pipeline input shape.
"""

import base64
from dataclasses import dataclass
from typing import Optional


@dataclass
class IntakeDocument:
    """A single source item handed to the processing pipeline."""

    subject: str = ""
    sender: str = ""
    body: str = ""
    # Pre-extracted attachment text (if the source could provide it)
    attachment_text: Optional[str] = None
    attachment_pdf: Optional[bytes] = None
    attachment_filename: Optional[str] = None
    source_item_id: Optional[str] = None

    @property
    def has_pdf(self) -> bool:
        return bool(self.attachment_pdf)

    def text_length(self) -> int:
        """Combined length of all text fields sent to the extraction service."""
        return len(self.subject) + len(self.body) + len(self.attachment_text or "")

    def pdf_base64(self) -> Optional[str]:
        if not self.attachment_pdf:
            return None
        return base64.b64encode(self.attachment_pdf).decode("ascii")

    def document_text(self) -> str:
        """Text view of the document used for classification and verification."""
        parts = [f"Email Subject: {self.subject}", f"Email Body:\n{self.body}"]
        if self.attachment_text:
            parts.append(f"Attachment Text:\n{self.attachment_text}")
        elif self.has_pdf:
            parts.append(
                "A PDF attachment is present but its text content is not available. "
                "Use the attached PDF as the primary source."
            )
        else:
            parts.append("No attachment text available.")
        return "\n\n".join(parts)

    def to_dict(self) -> dict:
        """Audit snapshot (attachment bytes are never stored)."""
        return {
            "source_item_id": self.source_item_id,
            "email_subject": self.subject,
            "email_from": self.sender,
            "email_body": self.body,
            "attachment_text": self.attachment_text,
            "had_pdf_attachment": self.has_pdf,
            "attachment_filename": self.attachment_filename,
        }
