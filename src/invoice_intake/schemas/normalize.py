"""
Vendor name normalization.

Normalized names are the vendor identity within a tenant: two spellings
that normalize equally resolve to the same vendor row.
"""

import re

# Common business suffixes stripped before comparison
BUSINESS_SUFFIXES = re.compile(
    r"\b(pty\.?\s*ltd\.?|ltd\.?|limited|inc\.?|incorporated|llc\.?|l\.l\.c\.?"
    r"|corp\.?|corporation|plc\.?|co\.?(?!\S))(?=\W|$)",
    re.IGNORECASE,
)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_vendor_name(name: str | None) -> str:
    """
    Normalize a vendor name for matching.

    Examples:
        "Acme Pty Ltd" -> "acme"
        "ACME, Inc." -> "acme"
        "Blue Sky Co." -> "blue-sky"
    """
    if not name:
        return ""
    stripped = BUSINESS_SUFFIXES.sub("", name)
    normalized = _NON_ALNUM.sub("-", stripped.lower().strip())
    return normalized.strip("-")
