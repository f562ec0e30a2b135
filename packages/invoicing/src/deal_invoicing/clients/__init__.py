"""HTTP adapters for the CRM, the accounting backend and the ledger."""

from deal_invoicing.clients.accounting import AccountingClient
from deal_invoicing.clients.base import BaseAPIClient
from deal_invoicing.clients.crm import CRMClient
from deal_invoicing.clients.ledger import LedgerClient

__all__ = ["AccountingClient", "BaseAPIClient", "CRMClient", "LedgerClient"]
