"""
Extraction service client implementation.

Talks to an OpenAI-compatible chat completions endpoint in JSON mode.
Three capabilities are used:
- classify: is this a financial document worth processing?
- extract: pull the structured invoice out of the document
- verify: cross-check an extraction against the source text

Privacy: prompts and document content are never logged above DEBUG.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from ..schemas import (
    Classification,
    ExtractedInvoice,
    IntakeDocument,
    SchemaValidationError,
    Verification,
)
from .prompts import PROMPT_VERSION, ClassifyPrompt, ExtractPrompt, VerifyPrompt

if TYPE_CHECKING:
    from ..config import ExtractionServiceConfig

logger = logging.getLogger(__name__)


class ExtractionServiceError(Exception):
    """Base exception for extraction service failures."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Rate limits and server-side failures are worth retrying."""
        return self.status_code is not None and (
            self.status_code == 429 or self.status_code >= 500
        )


class ExtractionAPIError(ExtractionServiceError):
    """Service returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.response_body = response_body
        super().__init__(f"Extraction API error {status_code}: {message}", status_code)


class ExtractionTimeoutError(ExtractionServiceError):
    """Request did not complete within the configured timeout."""

    retryable = True


class ExtractionConnectionError(ExtractionServiceError):
    """Failed to reach the extraction service."""

    retryable = True


class DocumentTooLargeError(ExtractionServiceError):
    """Document text exceeds the configured maximum length."""

    retryable = False

    def __init__(self, length: int, limit: int):
        self.length = length
        self.limit = limit
        super().__init__(f"Document text too large: {length} characters (limit {limit})")


class ExtractionClient:
    """
    Client for the extraction service.

    Usage:
        with ExtractionClient(config.extraction) as client:
            classification = client.classify(document)
    """

    def __init__(self, config: ExtractionServiceConfig, transport: httpx.BaseTransport | None = None):
        """
        Initialize client.

        Args:
            config: Extraction service config section
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")

        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=float(config.connect_timeout_seconds),
                read=float(config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
            transport=transport,
        )
        self._classify_prompt = ClassifyPrompt()
        self._extract_prompt = ExtractPrompt()
        self._verify_prompt = VerifyPrompt()

    @property
    def prompt_version(self) -> str:
        return PROMPT_VERSION

    def check_size(self, document: IntakeDocument) -> None:
        """Raise DocumentTooLargeError when the document exceeds max_text_length."""
        length = document.text_length()
        if length > self.config.max_text_length:
            raise DocumentTooLargeError(length, self.config.max_text_length)

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def classify(self, document: IntakeDocument) -> Classification:
        """Classify a document (invoice / expense / other)."""
        self.check_size(document)
        content = self._complete(
            self._classify_prompt.system_prompt,
            self._classify_prompt.format_user_message(document.document_text()),
            document,
        )
        return Classification.from_dict(self._parse_json_response("classify", content))

    def extract(self, document: IntakeDocument) -> ExtractedInvoice:
        """Extract the structured invoice from a document."""
        self.check_size(document)
        content = self._complete(
            self._extract_prompt.system_prompt,
            self._extract_prompt.format_user_message(document.document_text()),
            document,
        )
        return ExtractedInvoice.from_dict(self._parse_json_response("extract", content))

    def verify(self, invoice: ExtractedInvoice, document_text: str) -> Verification:
        """Cross-check an extraction against the document text."""
        content = self._complete(
            self._verify_prompt.system_prompt,
            self._verify_prompt.format_user_message(invoice.to_dict(), document_text),
        )
        return Verification.from_dict(self._parse_json_response("verify", content))

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _build_user_content(
        self, user_message: str, document: IntakeDocument | None
    ) -> str | list[dict[str, Any]]:
        """Plain text, or text plus a PDF file part when the document has one."""
        if document is None or not document.has_pdf:
            return user_message
        filename = document.attachment_filename or "document.pdf"
        return [
            {
                "type": "file",
                "file": {
                    "filename": filename,
                    "file_data": f"data:application/pdf;base64,{document.pdf_base64()}",
                },
            },
            {"type": "text", "text": user_message},
        ]

    def _complete(
        self,
        system_prompt: str,
        user_message: str,
        document: IntakeDocument | None = None,
    ) -> str:
        """Run one chat completion and return the message content."""
        url = f"{self.base_url}/chat/completions"
        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": self._build_user_content(user_message, document)},
            ],
            "response_format": {"type": "json_object"},
            "temperature": 0,
        }

        logger.debug("Calling extraction model %s at %s", self.config.model, self.base_url)

        try:
            response = self._client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise ExtractionTimeoutError(
                f"Extraction request timed out after {self.config.timeout_seconds}s"
            ) from e
        except httpx.RequestError as e:
            raise ExtractionConnectionError(f"Failed to reach extraction service: {e}") from e

        if response.status_code >= 400:
            try:
                error_data = response.json()
                message = error_data.get("error", {}).get("message", response.text)
            except (ValueError, AttributeError):
                message = response.text
            raise ExtractionAPIError(response.status_code, message, response.text)

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionServiceError(f"Malformed completion response: {e}") from e

        logger.debug("Extraction model %s returned %d chars", self.config.model, len(content or ""))
        return content or ""

    def _parse_json_response(self, step: str, content: str) -> dict:
        """
        Parse the JSON object returned by the model.

        Markdown code fences around the object are tolerated.

        Raises:
            SchemaValidationError: content is empty or not a JSON object
        """
        content = (content or "").strip()
        if content.startswith("```json"):
            content = content[7:]
        elif content.startswith("```"):
            content = content[3:]
        if content.endswith("```"):
            content = content[:-3]
        content = content.strip()

        if not content:
            raise SchemaValidationError(step, "empty response from extraction service")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise SchemaValidationError(step, f"response is not valid JSON: {e}") from None
        if not isinstance(data, dict):
            raise SchemaValidationError(step, "response is not a JSON object")
        return data

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "ExtractionClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
