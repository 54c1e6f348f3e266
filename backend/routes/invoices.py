"""Invoice Routes - Per-estate invoices and their status lifecycle.

Endpoints:
- GET /api/estates/{estate_id}/invoices - Any member
- POST /api/estates/{estate_id}/invoices - Create DRAFT (EDITOR+, caller on Pro)
- GET /api/estates/{estate_id}/invoices/{invoice_id} - Any member
- PATCH /api/estates/{estate_id}/invoices/{invoice_id}/status - Transition (EDITOR+)
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime, timezone
from database import database
from models import Invoice, InvoiceLineItem, InvoiceStatus, EstateEventType
from middleware import estate_route_guard, estate_edit_guard
from services.invoices import parse_status, is_allowed_transition, compute_totals, STATUS_SUMMARIES
from services.estate_events import log_estate_event
from services.entitlements import require_pro
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/estates/{estate_id}/invoices", tags=["invoices"])


class InvoiceCreateRequest(BaseModel):
    invoice_number: Optional[str] = None
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    currency: str = "USD"
    tax_rate: float = 0
    line_items: List[InvoiceLineItem] = []


class InvoiceStatusRequest(BaseModel):
    status: str


@router.get("")
async def list_invoices(request: Request, estate_id: str, status_filter: Optional[str] = None):
    await estate_route_guard(request, estate_id)
    db = database.get_db()

    query = {"estate_id": estate_id}
    if status_filter:
        parsed = parse_status(status_filter)
        if not parsed:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status")
        query["status"] = parsed.value

    invoices = await db.invoices.find(query, {"_id": 0}).sort("issue_date", -1).to_list(length=500)
    return {"invoices": invoices}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_invoice(request: Request, estate_id: str, body: InvoiceCreateRequest):
    user, _ = await estate_edit_guard(request, estate_id)
    db = database.get_db()

    actor = await db.users.find_one({"user_id": user["user_id"]}, {"_id": 0})
    require_pro(actor)

    estate = await db.estates.find_one({"estate_id": estate_id}, {"_id": 0, "owner_id": 1})
    if not estate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estate not found")
    if body.tax_rate < 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tax_rate cannot be negative")

    items, subtotal, tax_amount, total = compute_totals(
        [li.model_dump(mode="json") for li in body.line_items], body.tax_rate
    )
    invoice = Invoice(
        estate_id=estate_id,
        owner_id=estate["owner_id"],
        invoice_number=body.invoice_number,
        due_date=body.due_date,
        notes=body.notes,
        currency=body.currency.upper(),
        line_items=items,
        subtotal=subtotal,
        tax_rate=body.tax_rate,
        tax_amount=tax_amount,
        total_amount=total,
    )
    doc = invoice.model_dump()
    doc["status"] = invoice.status.value
    doc["line_items"] = items
    await db.invoices.insert_one(doc)
    doc.pop("_id", None)

    await log_estate_event(
        owner_id=estate["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.INVOICE_CREATED,
        summary="Invoice created",
        detail=f"Invoice {invoice.invoice_number or invoice.invoice_id} for {total:.2f} {invoice.currency}",
        meta={"total_amount": total, "actor_id": user["user_id"]},
        entity_id=invoice.invoice_id,
    )
    return {"invoice": doc}


@router.get("/{invoice_id}")
async def get_invoice(request: Request, estate_id: str, invoice_id: str):
    await estate_route_guard(request, estate_id)
    db = database.get_db()
    invoice = await db.invoices.find_one({"estate_id": estate_id, "invoice_id": invoice_id}, {"_id": 0})
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return {"invoice": invoice}


@router.patch("/{invoice_id}/status")
async def update_invoice_status(request: Request, estate_id: str, invoice_id: str, body: InvoiceStatusRequest):
    user, _ = await estate_edit_guard(request, estate_id)

    next_status = parse_status(body.status)
    if not next_status:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing/invalid status")

    db = database.get_db()
    invoice = await db.invoices.find_one({"estate_id": estate_id, "invoice_id": invoice_id}, {"_id": 0})
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")

    previous = parse_status(invoice.get("status")) or InvoiceStatus.DRAFT
    if previous == next_status:
        return {"invoice": invoice}
    if not is_allowed_transition(previous, next_status):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status transition")

    now = datetime.now(timezone.utc)
    updates = {"status": next_status.value, "updated_at": now}
    if next_status == InvoiceStatus.PAID:
        updates["paid_at"] = now

    # Only applies if nobody moved the invoice since it was read
    result = await db.invoices.update_one(
        {"estate_id": estate_id, "invoice_id": invoice_id, "status": invoice.get("status")},
        {"$set": updates},
    )
    if result.matched_count == 0:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Invoice status changed by another request. Reload and try again.",
        )
    invoice.update(updates)

    await log_estate_event(
        owner_id=invoice["owner_id"],
        estate_id=estate_id,
        type=EstateEventType.INVOICE_STATUS_CHANGED,
        summary=STATUS_SUMMARIES[next_status],
        detail=f"Status changed from {previous.value} to {next_status.value}",
        meta={"previous_status": previous.value, "status": next_status.value, "actor_id": user["user_id"]},
        entity_id=invoice_id,
    )
    return {"invoice": invoice}
