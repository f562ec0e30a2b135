"""Reconciliation driver.

Turns billing triggers on CRM deals into proformas. For every flagged deal
the driver asks the resolver whether a document already exists, creates one
only when it does not, persists it to the ledger and writes the identifiers
back to the deal. Deletion requests are handed to the deletion resolver.
Both polling (:meth:`ReconciliationDriver.run`) and webhooks
(:meth:`ReconciliationDriver.handle_webhook`) end up in the same per-deal
code path.
"""

from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any

import structlog

from deal_invoicing.buyer import merge_buyer
from deal_invoicing.cache import BankAccountCache
from deal_invoicing.config.bank_accounts import load_bank_account_config
from deal_invoicing.config.settings import Settings
from deal_invoicing.crm_fields import DealAdapter, DealStateUpdate, merge_document_numbers
from deal_invoicing.deletion import DeletionReport, DeletionResolver
from deal_invoicing.documents import build_document_payload, build_line_items, document_total
from deal_invoicing.errors import CollaboratorError, DealValidationError, WriteBackError
from deal_invoicing.locks import DealLocks
from deal_invoicing.models import BillingTrigger, BuyerSnapshot, Deal, Document
from deal_invoicing.protocols import AccountingBackend, Ledger, TriggerSource
from deal_invoicing.redelivery import RecentSignalGuard, parse_webhook
from deal_invoicing.resolver import ExistingDocumentResolver, Resolution, ResolutionSource
from deal_invoicing.retry import RetryPolicy
from deal_invoicing.schedule import (
    PaymentSchedule,
    ScheduleConfig,
    compute_schedule,
    follow_up_tasks,
)
from deal_invoicing.validation import validate_deal
from deal_invoicing.writeback import DealStateWriter

logger = structlog.get_logger(__name__)


# =============================================================================
# RESULTS
# =============================================================================


class DealOutcome(str, Enum):
    """How processing of one deal ended."""

    CREATED = "created"
    SKIPPED_EXISTING = "skipped-existing"
    DEFERRED = "deferred"
    INVALID = "invalid"
    FAILED = "failed"
    WRITEBACK_FAILED = "writeback-failed"
    DELETED = "deleted"
    DELETION_INCOMPLETE = "deletion-incomplete"
    IGNORED = "ignored"


NEEDS_ATTENTION = frozenset(
    {
        DealOutcome.FAILED,
        DealOutcome.WRITEBACK_FAILED,
        DealOutcome.DELETION_INCOMPLETE,
    }
)


@dataclass
class DealResult:
    """Outcome of processing one deal."""

    deal_id: int | None
    outcome: DealOutcome
    document_id: str | None = None
    document_number: str | None = None
    schedule: PaymentSchedule | None = None
    message: str | None = None
    deletion: DeletionReport | None = None


@dataclass
class RunSummary:
    """All deal results of one polling run."""

    results: list[DealResult] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return dict(Counter(result.outcome.value for result in self.results))

    @property
    def failed(self) -> list[DealResult]:
        return [result for result in self.results if result.outcome in NEEDS_ATTENTION]


# =============================================================================
# DRIVER
# =============================================================================


class ReconciliationDriver:
    """Processes flagged deals one at a time."""

    def __init__(
        self,
        trigger_source: TriggerSource,
        backend: AccountingBackend,
        ledger: Ledger,
        adapter: DealAdapter,
        bank_accounts: BankAccountCache,
        *,
        writer: DealStateWriter | None = None,
        schedule_config: ScheduleConfig | None = None,
        guard: RecentSignalGuard | None = None,
        locks: DealLocks | None = None,
        deletion_concurrency: int = 4,
        today: Callable[[], date] = date.today,
    ):
        self.trigger_source = trigger_source
        self.backend = backend
        self.ledger = ledger
        self.adapter = adapter
        self.bank_accounts = bank_accounts
        self.writer = writer or DealStateWriter(trigger_source, adapter)
        self.resolver = ExistingDocumentResolver(ledger, backend)
        self.deletion = DeletionResolver(ledger, backend, trigger_source, self.writer)
        self.schedule_config = schedule_config or ScheduleConfig()
        self.guard = guard or RecentSignalGuard()
        self.locks = locks or DealLocks()
        self.deletion_concurrency = deletion_concurrency
        self.today = today
        self._logger = logger.bind(component="reconciliation_driver")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        trigger_source: TriggerSource,
        backend: AccountingBackend,
        ledger: Ledger,
    ) -> "ReconciliationDriver":
        """Wire a driver with settings-derived policies and caches."""
        adapter = DealAdapter.from_settings(settings)
        return cls(
            trigger_source,
            backend,
            ledger,
            adapter,
            BankAccountCache(backend, load_bank_account_config()),
            writer=DealStateWriter(trigger_source, adapter, RetryPolicy.from_settings(settings)),
            schedule_config=ScheduleConfig.from_settings(settings),
            guard=RecentSignalGuard.from_settings(settings),
            deletion_concurrency=settings.deletion_concurrency,
        )

    # === Entry points ===

    async def run(self) -> RunSummary:
        """Poll open deals and process every one that carries a trigger.

        Creation requests are handled sequentially in list order; deletion
        requests run afterwards, several deals at a time.
        """
        summary = RunSummary()
        self.bank_accounts.invalidate()

        raw_deals = await self.trigger_source.list_open_deals()
        deals = [self.adapter.parse(raw) for raw in raw_deals]
        creations = [deal for deal in deals if deal.trigger == BillingTrigger.PROFORMA]
        deletions = [deal for deal in deals if deal.trigger == BillingTrigger.DELETE]
        self._logger.info(
            "reconciliation_run_started",
            deals=len(deals),
            creations=len(creations),
            deletions=len(deletions),
        )

        for deal in creations:
            summary.results.append(await self.process_deal(deal))

        if deletions:
            reports = await self.deletion.process_many(
                deletions, self.deletion_concurrency, locks=self.locks
            )
            summary.results.extend(self._deletion_result(report) for report in reports)

        self._logger.info(
            "reconciliation_run_completed",
            counts=summary.counts(),
            failed=[result.deal_id for result in summary.failed],
        )
        return summary

    async def process_deal(self, deal: Deal) -> DealResult:
        """Dispatch one deal on its trigger, holding the deal's lock."""
        async with self.locks.hold(deal.id):
            with structlog.contextvars.bound_contextvars(deal_id=deal.id):
                return await self._dispatch(deal)

    async def handle_webhook(self, payload: dict[str, Any]) -> DealResult:
        """Process a CRM webhook delivery.

        Redeliveries seen within the guard's TTL are ignored. The deal is
        re-read from the CRM so the decision uses current state, not the
        possibly outdated webhook body.
        """
        signal = parse_webhook(payload, self.adapter.fields.trigger)
        if signal.deal_id is None:
            self._logger.info("webhook_without_deal", webhook_event=signal.event)
            return DealResult(None, DealOutcome.IGNORED, message="no deal id in payload")
        if self.guard.check_and_remember(signal.signature):
            self._logger.debug("webhook_duplicate_ignored", deal_id=signal.deal_id)
            return DealResult(signal.deal_id, DealOutcome.IGNORED, message="duplicate delivery")

        if signal.is_deal_deletion:
            previous = {**(payload.get("previous") or {}), "id": signal.deal_id}
            deal = replace(self.adapter.parse(previous), trigger=BillingTrigger.DELETE)
            async with self.locks.hold(deal.id):
                with structlog.contextvars.bound_contextvars(deal_id=deal.id):
                    report = await self.deletion.process(deal, write_back=False)
            return self._deletion_result(report)

        try:
            raw = await self.trigger_source.get_deal(signal.deal_id)
        except CollaboratorError as e:
            # Let a redelivery try again
            self.guard.forget(signal.signature)
            self._logger.error("webhook_deal_fetch_failed", deal_id=signal.deal_id, error=str(e))
            return DealResult(signal.deal_id, DealOutcome.FAILED, message=str(e))
        if raw is None:
            return DealResult(signal.deal_id, DealOutcome.IGNORED, message="deal not found")

        result = await self.process_deal(self.adapter.parse(raw))
        if result.outcome in NEEDS_ATTENTION or result.outcome == DealOutcome.DEFERRED:
            self.guard.forget(signal.signature)
        return result

    # === Per-deal processing ===

    async def _dispatch(self, deal: Deal) -> DealResult:
        try:
            if deal.trigger == BillingTrigger.PROFORMA:
                return await self.create_for_deal(deal)
            if deal.trigger == BillingTrigger.DELETE:
                return await self.delete_for_deal(deal)
        except Exception as e:
            self._logger.exception("deal_processing_crashed", deal_id=deal.id)
            return DealResult(deal.id, DealOutcome.FAILED, message=repr(e))
        return DealResult(deal.id, DealOutcome.IGNORED, message=f"trigger {deal.trigger.value}")

    async def delete_for_deal(self, deal: Deal) -> DealResult:
        report = await self.deletion.process(deal)
        return self._deletion_result(report)

    async def create_for_deal(self, deal: Deal) -> DealResult:
        """Issue the proforma for ``deal`` unless one already exists."""
        self.writer.remember(deal)

        resolution = await self.resolver.resolve(deal)
        if resolution.found:
            return await self._sync_existing(deal, resolution)
        if resolution.blocked:
            return DealResult(
                deal.id,
                DealOutcome.DEFERRED,
                document_id=deal.document_id,
                message="recorded document could not be verified",
            )

        try:
            buyer = validate_deal(deal, await self._load_buyer(deal), self.bank_accounts.config)
            document, schedule = await self._create_document(deal, buyer)
        except DealValidationError as e:
            self._logger.warning("deal_invalid", deal_id=deal.id, reason=e.reason)
            return DealResult(deal.id, DealOutcome.INVALID, message=e.reason)
        except CollaboratorError as e:
            self._logger.error(
                "document_creation_failed", deal_id=deal.id, error=str(e), status=e.status_code
            )
            return DealResult(deal.id, DealOutcome.FAILED, message=str(e))

        persisted = await self._persist(document)
        await self._create_follow_up_tasks(deal, document, schedule)

        update = DealStateUpdate(
            document_id=document.id,
            document_numbers=merge_document_numbers(deal.document_numbers, document.number),
        )
        if persisted:
            update.trigger = BillingTrigger.DONE

        result = DealResult(
            deal.id,
            DealOutcome.CREATED,
            document_id=document.id,
            document_number=document.number,
            schedule=schedule,
        )
        try:
            await self.writer.write_back(deal.id, update)
        except WriteBackError as e:
            result.outcome = DealOutcome.WRITEBACK_FAILED
            result.message = str(e)
            return result

        if not persisted:
            result.outcome = DealOutcome.FAILED
            result.message = "document created but not recorded in the ledger"
        return result

    async def _sync_existing(self, deal: Deal, resolution: Resolution) -> DealResult:
        """Bring the deal and the ledger in line with an already issued document."""
        document = resolution.document
        # Backend-confirmed while the ledger was unreachable: its row is unknown
        persisted = not (
            resolution.source == ResolutionSource.DEAL_FIELD
            and "ledger" in resolution.degraded_sources
        )
        if document is not None and (resolution.ledger_missing or resolution.number_fetched):
            persisted = await self._persist(replace(document, deal_id=deal.id))

        update = DealStateUpdate(
            document_id=resolution.document_id,
            document_numbers=merge_document_numbers(
                deal.document_numbers, resolution.document_number
            ),
        )
        if persisted:
            update.trigger = BillingTrigger.DONE

        result = DealResult(
            deal.id,
            DealOutcome.SKIPPED_EXISTING,
            document_id=resolution.document_id,
            document_number=resolution.document_number,
            message=f"found via {resolution.source.value}" if resolution.source else None,
        )
        try:
            await self.writer.write_back(deal.id, update)
        except WriteBackError as e:
            result.outcome = DealOutcome.WRITEBACK_FAILED
            result.message = str(e)
        return result

    async def _load_buyer(self, deal: Deal) -> BuyerSnapshot | None:
        person = await self.trigger_source.get_person(deal.person_id) if deal.person_id else None
        organization = (
            await self.trigger_source.get_organization(deal.organization_id)
            if deal.organization_id
            else None
        )
        return merge_buyer(person, organization)

    async def _create_document(
        self, deal: Deal, buyer: BuyerSnapshot
    ) -> tuple[Document, PaymentSchedule]:
        bank_account = await self.bank_accounts.for_currency(deal.currency)
        if bank_account is None:
            raise DealValidationError(deal.id, f"no bank account for {deal.currency}")

        buyer_id = await self._ensure_contractor(buyer)
        products = await self.trigger_source.get_deal_products(deal.id)
        items = build_line_items(deal, products)
        issue_date = self.today()
        schedule = compute_schedule(
            issue_date, document_total(items), deal.currency, deal.close_date, self.schedule_config
        )
        payload = build_document_payload(
            deal, buyer, items, schedule, bank_account, issue_date, buyer_id=buyer_id
        )

        created = await self.backend.create_document(payload)
        number = created.get("number") or created.get("fullnumber")
        document = Document(
            id=str(created["id"]),
            number=str(number) if number else None,
            currency=deal.currency,
            total=schedule.total,
            issue_date=issue_date,
            deal_id=deal.id,
            buyer=buyer,
            items=items,
        )
        self._logger.info(
            "document_created",
            deal_id=deal.id,
            document_id=document.id,
            document_number=document.number,
            schedule=schedule.type.value,
        )

        if not document.number:
            document.number = await self._fetch_number(document.id)
        return document, schedule

    async def _ensure_contractor(self, buyer: BuyerSnapshot) -> str:
        """Backend contractor id for ``buyer``, registering the buyer on first use."""
        email = buyer.email or ""
        contractor = await self.backend.find_contractor_by_email(email)
        if contractor is None:
            contractor = await self.backend.create_contractor(buyer.to_dict())
            self._logger.info("contractor_registered", contractor_id=contractor["id"], email=email)
        return str(contractor["id"])

    async def _fetch_number(self, document_id: str) -> str | None:
        """Number assigned by the backend after creation, asked for once."""
        try:
            payload = await self.backend.get_document(document_id)
        except CollaboratorError as e:
            self._logger.warning("document_number_unavailable", document_id=document_id, error=str(e))
            return None
        if not payload:
            return None
        return Document.from_backend(payload).number

    async def _persist(self, document: Document) -> bool:
        try:
            await self.ledger.upsert(document)
        except CollaboratorError as e:
            self._logger.error(
                "ledger_upsert_failed", document_id=document.id, deal_id=document.deal_id, error=str(e)
            )
            return False
        return True

    async def _create_follow_up_tasks(
        self, deal: Deal, document: Document, schedule: PaymentSchedule
    ) -> None:
        for task in follow_up_tasks(schedule, document.number or document.id, deal.id):
            try:
                await self.trigger_source.create_task(deal.id, task.subject, task.due_date, task.note)
            except CollaboratorError as e:
                self._logger.warning(
                    "follow_up_task_creation_failed", deal_id=deal.id, subject=task.subject, error=str(e)
                )

    @staticmethod
    def _deletion_result(report: DeletionReport) -> DealResult:
        deleted = (
            report.all_deleted and report.write_back_error is None and report.log_error is None
        )
        return DealResult(
            report.deal_id,
            DealOutcome.DELETED if deleted else DealOutcome.DELETION_INCOMPLETE,
            document_id=", ".join(report.deleted_ids) or None,
            document_number=", ".join(report.deleted_numbers) or None,
            message=report.write_back_error or report.log_error,
            deletion=report,
        )
