"""
Intake sources and the poller that feeds them through the lease queue
into the processing pipeline.
"""

from .poller import Poller, PollResult
from .sources import (
    EML_DIRECTORY,
    EmlDirectorySource,
    MailboxSource,
    SourceError,
    create_source,
    parse_eml,
)

__all__ = [
    "EML_DIRECTORY",
    "EmlDirectorySource",
    "MailboxSource",
    "PollResult",
    "Poller",
    "SourceError",
    "create_source",
    "parse_eml",
]
