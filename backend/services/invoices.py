"""Invoice lifecycle rules.

DRAFT -> SENT | VOID
SENT -> PARTIAL | PAID | VOID
PARTIAL -> PAID | VOID
PAID, VOID are terminal.
"""
from typing import List, Dict, Any, Optional, Tuple
from models import InvoiceStatus

ALLOWED_TRANSITIONS = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT, InvoiceStatus.VOID}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PARTIAL, InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.PARTIAL: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}

STATUS_SUMMARIES = {
    InvoiceStatus.DRAFT: "Invoice moved to draft",
    InvoiceStatus.SENT: "Invoice marked sent",
    InvoiceStatus.PARTIAL: "Invoice marked partially paid",
    InvoiceStatus.PAID: "Invoice marked paid",
    InvoiceStatus.VOID: "Invoice voided",
}


def parse_status(value: Any) -> Optional[InvoiceStatus]:
    if isinstance(value, InvoiceStatus):
        return value
    if not isinstance(value, str):
        return None
    try:
        return InvoiceStatus(value.strip().upper())
    except ValueError:
        return None


def is_allowed_transition(previous: InvoiceStatus, next_status: InvoiceStatus) -> bool:
    if previous == next_status:
        return True
    return next_status in ALLOWED_TRANSITIONS.get(previous, frozenset())


def compute_totals(line_items: List[Dict[str, Any]], tax_rate: float = 0) -> Tuple[List[Dict[str, Any]], float, float, float]:
    """Fill in missing line amounts and return (items, subtotal, tax_amount, total)."""
    items = []
    subtotal = 0.0
    for item in line_items:
        item = dict(item)
        amount = item.get("amount")
        if amount is None:
            amount = float(item.get("quantity") or 0) * float(item.get("rate") or 0)
        item["amount"] = round(float(amount), 2)
        subtotal += item["amount"]
        items.append(item)

    subtotal = round(subtotal, 2)
    tax_amount = round(subtotal * float(tax_rate or 0), 2)
    return items, subtotal, tax_amount, round(subtotal + tax_amount, 2)
