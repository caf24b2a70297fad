"""
Extraction service client.

HTTP client for the external classification/extraction/verification
service (OpenAI-compatible chat completions, JSON mode).
"""

from .client import (
    DocumentTooLargeError,
    ExtractionAPIError,
    ExtractionClient,
    ExtractionConnectionError,
    ExtractionServiceError,
    ExtractionTimeoutError,
)
from .prompts import PROMPT_VERSION

__all__ = [
    "DocumentTooLargeError",
    "ExtractionAPIError",
    "ExtractionClient",
    "ExtractionConnectionError",
    "ExtractionServiceError",
    "ExtractionTimeoutError",
    "PROMPT_VERSION",
]
