"""Invoice lifecycle transitions and totals."""
import pytest

from models import InvoiceStatus
from services.invoices import parse_status, is_allowed_transition, compute_totals


@pytest.mark.parametrize("previous,next_status", [
    (InvoiceStatus.DRAFT, InvoiceStatus.SENT),
    (InvoiceStatus.DRAFT, InvoiceStatus.VOID),
    (InvoiceStatus.SENT, InvoiceStatus.PARTIAL),
    (InvoiceStatus.SENT, InvoiceStatus.PAID),
    (InvoiceStatus.PARTIAL, InvoiceStatus.PAID),
])
def test_allowed_transitions(previous, next_status):
    assert is_allowed_transition(previous, next_status)


@pytest.mark.parametrize("previous,next_status", [
    (InvoiceStatus.DRAFT, InvoiceStatus.PAID),
    (InvoiceStatus.PAID, InvoiceStatus.SENT),
    (InvoiceStatus.VOID, InvoiceStatus.DRAFT),
    (InvoiceStatus.PARTIAL, InvoiceStatus.SENT),
])
def test_rejected_transitions(previous, next_status):
    assert not is_allowed_transition(previous, next_status)


def test_same_status_is_allowed():
    assert is_allowed_transition(InvoiceStatus.PAID, InvoiceStatus.PAID)


def test_parse_status_is_case_insensitive():
    assert parse_status(" paid ") == InvoiceStatus.PAID
    assert parse_status("refunded") is None
    assert parse_status(None) is None


def test_compute_totals_fills_missing_amounts():
    items, subtotal, tax, total = compute_totals(
        [
            {"type": "TIME", "label": "Court filing prep", "quantity": 2.5, "rate": 120},
            {"type": "EXPENSE", "label": "Filing fee", "amount": 45.5},
        ],
        tax_rate=0.1,
    )
    assert items[0]["amount"] == 300.0
    assert subtotal == 345.5
    assert tax == 34.55
    assert total == 380.05
