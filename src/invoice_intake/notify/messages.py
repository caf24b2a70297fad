"""
Slack-style block payload builders.
"""

from decimal import Decimal
from typing import Any, Optional, Sequence

from ..schemas import ExtractedInvoice
from ..state_store import AlertRecord, AlertSeverity
from ..validation import ValidationResult


def confidence_label(confidence: float) -> str:
    if confidence >= 0.9:
        return "High"
    if confidence >= 0.7:
        return "Medium"
    return "Low"


def _confidence_emoji(confidence: float) -> str:
    if confidence >= 0.9:
        return ":white_check_mark:"
    if confidence >= 0.7:
        return ":large_yellow_circle:"
    return ":warning:"


def _format_amount(amount: Optional[Decimal], currency: Optional[str]) -> str:
    if amount is None:
        return "n/a"
    return f"{amount:,.2f} {currency or ''}".strip()


def _field(label: str, value: Optional[str]) -> dict[str, str]:
    return {"type": "mrkdwn", "text": f"*{label}:*\n{value or 'n/a'}"}


def build_invoice_message(
    invoice: ExtractedInvoice,
    invoice_id: int,
    confidence: float,
    validation: Optional[ValidationResult] = None,
    duplicate_warning: Optional[str] = None,
    document_type: str = "invoice",
) -> dict[str, Any]:
    """Message announcing a newly persisted invoice."""
    title = "New Expense Received" if document_type == "expense" else "New Invoice Received"
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f":page_facing_up: {title}", "emoji": True},
        },
        {
            "type": "section",
            "fields": [
                _field("Vendor", invoice.vendor_name),
                _field("Invoice #", invoice.invoice_number),
                _field("Amount", _format_amount(invoice.total, invoice.currency)),
                _field("Invoice Date", invoice.invoice_date),
                _field("Due Date", invoice.due_date),
                _field("Record", f"#{invoice_id}"),
            ],
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{_confidence_emoji(confidence)} *Confidence:* "
                    f"{confidence_label(confidence)} ({round(confidence * 100)}%)"
                ),
            },
        },
    ]

    if validation is not None and (validation.errors or validation.warnings):
        lines = [f":x: {e}" for e in validation.errors]
        lines += [f":grey_exclamation: {w}" for w in validation.warnings]
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}})

    if duplicate_warning:
        blocks.append(
            {"type": "context", "elements": [{"type": "mrkdwn", "text": f":warning: {duplicate_warning}"}]}
        )

    blocks.append({"type": "divider"})
    return {"blocks": blocks}


def build_health_alert_message(
    alerts: Sequence[AlertRecord],
    checks: dict[str, int],
) -> dict[str, Any]:
    """Summary message for a health sweep's non-info alerts."""
    count = len(alerts)
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": f"Pipeline Health Alert ({count} issue{'s' if count != 1 else ''})",
            },
        }
    ]
    for alert in alerts:
        marker = ":red_circle:" if alert.severity == AlertSeverity.CRITICAL else ":warning:"
        blocks.append(
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"{marker} *{alert.alert_type.value}*\n{alert.message}"},
            }
        )
    blocks.append(
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": (
                        f"Healthy: {checks.get('healthy', 0)} | "
                        f"Degraded: {checks.get('degraded', 0)} | "
                        f"Down: {checks.get('down', 0)} | "
                        f"Dead letter: {checks.get('dead_letter_total', 0)}"
                    ),
                }
            ],
        }
    )
    return {"blocks": blocks}
