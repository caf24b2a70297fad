"""Instruction prompts for the extraction service.

Prompts are versioned; the version is stored in every audit record so a
run can be traced back to the exact instructions it used.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

# v2.0: classify/extract/verify split, vendor contact fields
PROMPT_VERSION = "v2.0"


@dataclass
class ClassifyPrompt:
    """Decides whether a document is worth processing."""

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a financial document classification system.
Analyze the provided email content and any attached document to determine what
type of financial document this is. If a document is attached, use it as the
PRIMARY source.

When a PDF is attached but its text is not available, classify from the email
subject and body. An email that mentions "invoice", "tax invoice" or "bill" and
carries a PDF should be classified accordingly with moderate confidence.

Document types:
- "invoice": a vendor bill for goods/services owed (amount due, terms, due date)
- "expense": a receipt, payment confirmation, subscription charge, direct debit
  notice or other proof of a payment already made or scheduled
- "other": not a financial document (marketing, newsletters, correspondence)

Respond in JSON format:
{
    "is_invoice": true,
    "document_type": "invoice",
    "vendor_name": "Vendor name or null",
    "confidence": 0.9,
    "signals": ["detected indicators"]
}

is_invoice is true for both invoices and expenses."""

    def format_user_message(self, document_text: str) -> str:
        return f"Classify this document:\n\n{document_text}"


@dataclass
class ExtractPrompt:
    """Pulls the structured record out of a document."""

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a financial document data extraction system.
Extract structured data from the provided invoice, receipt or expense. If a
document is attached, read values from it; the email text is secondary context.

Respond with a JSON object containing exactly these fields:
- vendor_name: string
- invoice_number: string
- invoice_date: string (YYYY-MM-DD)
- due_date: string or null (YYYY-MM-DD)
- currency: string (ISO 4217)
- line_items: array of {description, quantity, unit_price, total}
- subtotal: number (sum of line item totals before tax)
- tax: number or null (0 if no tax)
- total: number (subtotal + tax)
- vendor_email, vendor_phone, vendor_address_line1, vendor_address_line2,
  vendor_city, vendor_state, vendor_postal_code, vendor_country,
  vendor_website, vendor_tax_id: string or null

Rules:
1. total MUST equal subtotal + tax
2. If only a total or amount due is shown, work backwards to subtotal and tax
3. All dates YYYY-MM-DD, all amounts plain numbers without currency symbols
4. Missing optional fields must be null
5. Include the tax ID label prefix (e.g. "ABN: 12 345 678 901")"""

    def format_user_message(self, document_text: str) -> str:
        return f"Extract the invoice data from this document:\n\n{document_text}"


@dataclass
class VerifyPrompt:
    """Second pass that cross-checks an extraction against the source."""

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a senior audit manager verifying extracted
invoice data against the original document text.

Check that:
1. All required fields are captured (leave blank if not in the document)
2. Line items sum to the subtotal and subtotal + tax equals total
3. Dates are YYYY-MM-DD and the currency is a valid ISO 4217 code
4. Values match the source text (no OCR slips)

Only correct clear errors. Do not change values that are merely unusual.

Respond in JSON format:
{
    "status": "VERIFIED or CORRECTED",
    "corrections": ["one string per correction made"],
    "data": { complete invoice object with every extraction field }
}"""

    def format_user_message(self, invoice_data: dict, document_text: str) -> str:
        return (
            f"EXTRACTED DATA:\n{json.dumps(invoice_data, indent=2)}\n\n"
            f"ORIGINAL DOCUMENT TEXT:\n{document_text}"
        )
