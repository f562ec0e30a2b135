"""Deal invoicing - proforma reconciliation between a CRM, a ledger and an accounting backend."""

__version__ = "0.1.0"

from deal_invoicing.clients import AccountingClient, CRMClient, LedgerClient
from deal_invoicing.config import configure_logging, get_settings
from deal_invoicing.deletion import DeletionReport, DeletionResolver
from deal_invoicing.models import BillingTrigger, Deal, DeletionOutcome, Document
from deal_invoicing.reconciler import (
    DealOutcome,
    DealResult,
    ReconciliationDriver,
    RunSummary,
)
from deal_invoicing.resolver import ExistingDocumentResolver, Resolution
from deal_invoicing.schedule import PaymentSchedule, ScheduleConfig, compute_schedule
from deal_invoicing.writeback import DealStateWriter, WriteBackResult

__all__ = [
    # Version
    "__version__",
    # Domain
    "BillingTrigger",
    "Deal",
    "DeletionOutcome",
    "Document",
    # Engine
    "ExistingDocumentResolver",
    "Resolution",
    "compute_schedule",
    "PaymentSchedule",
    "ScheduleConfig",
    "DeletionResolver",
    "DeletionReport",
    "DealStateWriter",
    "WriteBackResult",
    "ReconciliationDriver",
    "DealOutcome",
    "DealResult",
    "RunSummary",
    # Clients
    "AccountingClient",
    "CRMClient",
    "LedgerClient",
    # Config
    "get_settings",
    "configure_logging",
]
