"""Tests for document payload assembly and ledger records."""

from datetime import date
from decimal import Decimal

from conftest import make_document, make_raw_deal

from deal_invoicing.cache import BankAccount
from deal_invoicing.documents import (
    DEFAULT_ITEM_NAME,
    build_document_payload,
    build_line_items,
    document_total,
)
from deal_invoicing.models import BuyerSnapshot, Document, DocumentStatus, LineItem
from deal_invoicing.schedule import compute_schedule


class TestLineItems:
    def test_whole_deal_without_products(self, adapter):
        deal = adapter.parse(make_raw_deal(value="1 250,50"))

        items = build_line_items(deal, [])

        assert items == [
            LineItem(name="Summer camp #42", quantity=Decimal("1"), unit_price=Decimal("1250.50"))
        ]

    def test_first_product(self, adapter):
        deal = adapter.parse(make_raw_deal())
        products = [
            {"name": "Camp week", "quantity": 2, "item_price": 500, "unit": "os."},
            {"name": "Transfer", "quantity": 1, "item_price": 80},
        ]

        items = build_line_items(deal, products)

        assert len(items) == 1
        assert items[0].name == "Camp week"
        assert items[0].unit == "os."
        assert document_total(items) == Decimal("1000")

    def test_product_name_from_nested_record(self, adapter):
        deal = adapter.parse(make_raw_deal())
        deal.title = ""

        items = build_line_items(deal, [{"product": {"unit": "h"}, "sum": 300}])

        assert items[0].name == DEFAULT_ITEM_NAME
        assert items[0].unit == "h"
        assert items[0].unit_price == Decimal("300")


class TestPayload:
    def test_split_payload(self, adapter):
        deal = adapter.parse(make_raw_deal())
        items = build_line_items(deal, [])
        schedule = compute_schedule(date(2026, 6, 1), document_total(items), "EUR", deal.close_date)
        buyer = BuyerSnapshot(name="Anna Kowalska", email="anna@example.com")

        payload = build_document_payload(
            deal,
            buyer,
            items,
            schedule,
            BankAccount(name="Rachunek EUR", currency="EUR", id="1"),
            date(2026, 6, 1),
            buyer_id="C7",
        )

        assert payload["date"] == "2026-06-01"
        assert payload["buyer_id"] == "C7"
        assert payload["payment_date"] == "2026-06-11"
        assert payload["total"] == "1000.00"
        assert payload["bank_account"] == {"id": "1", "name": "Rachunek EUR"}
        assert payload["buyer"]["email"] == "anna@example.com"
        assert payload["installments"] == [
            {"label": "deposit", "due_date": "2026-06-04", "amount": "500.00"},
            {"label": "balance", "due_date": "2026-06-11", "amount": "500.00"},
        ]
        assert payload["external_id"] == "deal-42"
        assert "deposit 500.00 EUR" in payload["description"]


class TestDocumentRecords:
    def test_ledger_row_round_trip(self):
        document = make_document()
        document.buyer = BuyerSnapshot(name="Anna Kowalska")

        restored = Document.from_record(document.to_record())

        assert restored == document

    def test_from_backend_payload(self):
        document = Document.from_backend(
            {
                "id": 1001,
                "number": "PRO 1001/2026",
                "currency": "EUR",
                "total": "1000.00",
                "date": "2026-06-01",
                "contractor": {"name": "ACME"},
            },
            deal_id=42,
        )

        assert document.id == "1001"
        assert document.number == "PRO 1001/2026"
        assert document.deal_id == 42
        assert document.buyer is not None
        assert document.buyer.name == "ACME"
        assert document.status == DocumentStatus.ACTIVE

    def test_deleted_backend_document(self):
        document = Document.from_backend({"id": "D1", "deleted": True})

        assert not document.is_active
        assert document.number is None
