"""Assembly of the accounting backend's create-document payload."""

from datetime import date
from decimal import Decimal
from typing import Any

from deal_invoicing.cache import BankAccount
from deal_invoicing.models import BuyerSnapshot, Deal, LineItem, to_decimal
from deal_invoicing.schedule import PaymentSchedule

DEFAULT_ITEM_NAME = "Camp / Tourist service"


def build_line_items(deal: Deal, products: list[dict[str, Any]]) -> list[LineItem]:
    """Line items from the deal's first product, or one item for the whole deal."""
    fallback_name = deal.title or DEFAULT_ITEM_NAME
    if not products:
        return [LineItem(name=fallback_name, quantity=Decimal("1"), unit_price=deal.amount)]

    product = products[0]
    nested = product.get("product") or {}
    quantity = to_decimal(product.get("quantity")) or Decimal("1")
    price = (
        to_decimal(product.get("item_price"))
        or to_decimal(product.get("sum"))
        or deal.amount
    )
    return [
        LineItem(
            name=str(product.get("name") or nested.get("name") or fallback_name),
            quantity=quantity,
            unit_price=price,
            unit=str(product.get("unit") or nested.get("unit") or "szt."),
        )
    ]


def document_total(items: list[LineItem]) -> Decimal:
    return sum((item.total for item in items), Decimal("0"))


def build_document_payload(
    deal: Deal,
    buyer: BuyerSnapshot,
    items: list[LineItem],
    schedule: PaymentSchedule,
    bank_account: BankAccount,
    issue_date: date,
    buyer_id: str | None = None,
) -> dict[str, Any]:
    """JSON body for ``AccountingBackend.create_document``.

    ``buyer_id`` is the backend's contractor for the buyer; the inline
    ``buyer`` copy is what gets printed on the document.
    """
    return {
        "type": "proforma",
        "date": issue_date.isoformat(),
        "payment_date": schedule.final_due_date.isoformat(),
        "currency": deal.currency,
        "total": str(schedule.total),
        "description": schedule.describe(),
        "buyer_id": buyer_id,
        "buyer": buyer.to_dict(),
        "items": [item.to_dict() for item in items],
        "bank_account": {"id": bank_account.id, "name": bank_account.name},
        "installments": [
            {
                "label": installment.label,
                "due_date": installment.due_date.isoformat(),
                "amount": str(installment.amount),
            }
            for installment in schedule.installments
        ],
        "external_id": f"deal-{deal.id}",
    }
