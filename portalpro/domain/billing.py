"""Invoice status rules and the aggregate counters shown on the invoices page."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from .models import Invoice, InvoiceStatus

ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.VIEWED, InvoiceStatus.PAID, InvoiceStatus.OVERDUE}),
    InvoiceStatus.VIEWED: frozenset({InvoiceStatus.PAID, InvoiceStatus.OVERDUE}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID}),
    InvoiceStatus.PAID: frozenset(),
}

OUTSTANDING = frozenset({InvoiceStatus.SENT, InvoiceStatus.VIEWED})


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(slots=True)
class InvoiceSummary:
    total: int = 0
    paid: int = 0
    outstanding: int = 0
    overdue: int = 0
    paid_amount: Decimal = Decimal("0")
    outstanding_amount: Decimal = Decimal("0")
    overdue_amount: Decimal = Decimal("0")


def summarize_invoices(invoices: Iterable[Invoice]) -> InvoiceSummary:
    summary = InvoiceSummary()
    for invoice in invoices:
        summary.total += 1
        if invoice.status is InvoiceStatus.PAID:
            summary.paid += 1
            summary.paid_amount += invoice.total
        elif invoice.status in OUTSTANDING:
            summary.outstanding += 1
            summary.outstanding_amount += invoice.total
        elif invoice.status is InvoiceStatus.OVERDUE:
            summary.overdue += 1
            summary.overdue_amount += invoice.total
    return summary
