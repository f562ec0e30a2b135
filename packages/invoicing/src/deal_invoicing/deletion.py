"""Multi-system deletion of the documents issued for a deal.

A deletion request removes documents from the accounting backend, marks
them deleted in the ledger, completes their payment follow-up tasks and,
once everything is confirmed, clears the deal's trigger. Every attempt on a
candidate leaves exactly one entry in the deletion log.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal

import structlog

from deal_invoicing.crm_fields import (
    DealStateUpdate,
    normalize_document_number,
    remove_document_numbers,
)
from deal_invoicing.errors import CollaboratorError, NotFoundError, WriteBackError
from deal_invoicing.locks import DealLocks
from deal_invoicing.models import (
    BillingTrigger,
    Deal,
    DeletionLogEntry,
    DeletionOutcome,
    Document,
    FollowUpTask,
)
from deal_invoicing.protocols import AccountingBackend, Ledger, TriggerSource
from deal_invoicing.retry import RetryExhaustedError, RetryPolicy
from deal_invoicing.writeback import DealStateWriter

logger = structlog.get_logger(__name__)


@dataclass
class CandidateOutcome:
    """What happened to one candidate document."""

    document_id: str | None
    document_number: str | None
    outcome: DeletionOutcome
    error: str | None = None

    @property
    def deleted(self) -> bool:
        return self.outcome == DeletionOutcome.DELETED


@dataclass
class DeletionReport:
    """Result of :meth:`DeletionResolver.process` for one deal."""

    deal_id: int
    outcomes: list[CandidateOutcome] = field(default_factory=list)
    log_entries: list[DeletionLogEntry] = field(default_factory=list)
    completed_task_ids: list[int] = field(default_factory=list)
    trigger_cleared: bool = False
    write_back_error: str | None = None
    # Set when a deletion log entry could not be stored
    log_error: str | None = None

    @property
    def all_deleted(self) -> bool:
        return bool(self.outcomes) and all(item.deleted for item in self.outcomes)

    @property
    def deleted_ids(self) -> list[str]:
        return [item.document_id for item in self.outcomes if item.deleted and item.document_id]

    @property
    def deleted_numbers(self) -> list[str]:
        return [
            item.document_number for item in self.outcomes if item.deleted and item.document_number
        ]


class DeletionResolver:
    """Retracts every document a deletion request points at."""

    def __init__(
        self,
        ledger: Ledger,
        backend: AccountingBackend,
        trigger_source: TriggerSource,
        writer: DealStateWriter,
        now: Callable[[], datetime] | None = None,
        retry: RetryPolicy | None = None,
    ):
        self.ledger = ledger
        self.backend = backend
        self.trigger_source = trigger_source
        self.writer = writer
        self.retry = retry or writer.policy
        self.now = now or (lambda: datetime.now(UTC))
        self._logger = logger.bind(component="deletion_resolver")

    # === Candidate selection ===

    async def gather_candidates(self, deal: Deal) -> list[Document]:
        """Documents a deletion request for ``deal`` may refer to.

        Raises:
            CollaboratorError: when the ledger cannot be queried.
        """
        candidates = [row for row in await self.ledger.find_by_deal_id(deal.id) if row.is_active]
        known_ids = {row.id for row in candidates}

        extra_ids = [doc_id for doc_id in deal.delete_document_ids if doc_id not in known_ids]
        if extra_ids:
            by_id = {row.id: row for row in await self.ledger.find_by_ids(extra_ids)}
            for doc_id in extra_ids:
                row = by_id.get(doc_id) or await self._from_backend(deal, doc_id)
                candidates.append(row)
                known_ids.add(doc_id)

        if not candidates and deal.document_numbers:
            rows = await self.ledger.find_by_numbers(deal.document_numbers)
            for row in rows:
                if not row.is_active or row.id in known_ids:
                    continue
                if row.deal_id is not None and row.deal_id != deal.id:
                    continue
                candidates.append(row)
                known_ids.add(row.id)

        return candidates

    async def _from_backend(self, deal: Deal, document_id: str) -> Document:
        try:
            payload = await self.backend.get_document(document_id)
        except CollaboratorError as e:
            self._logger.warning(
                "candidate_lookup_failed", deal_id=deal.id, document_id=document_id, error=str(e)
            )
            payload = None
        if payload:
            return Document.from_backend(payload, deal_id=deal.id)
        # Unknown everywhere; still try the backend delete by id
        return Document(
            id=document_id,
            number=None,
            currency=deal.currency,
            total=Decimal("0"),
            issue_date=date.today(),
            deal_id=deal.id,
        )

    @staticmethod
    def filter_candidates(deal: Deal, candidates: list[Document]) -> list[Document]:
        """Keep candidates matching the numbers recorded on the deal.

        Without recorded numbers every candidate is kept. Ids listed in the
        deal's explicit deletion field always pass.
        """
        if not deal.document_numbers:
            return list(candidates)
        wanted = {normalize_document_number(number) for number in deal.document_numbers}
        raw_wanted = set(deal.document_numbers) | set(deal.delete_document_ids)
        return [
            doc
            for doc in candidates
            if doc.id in raw_wanted or normalize_document_number(doc.number) in wanted
        ]

    # === Processing ===

    async def process(self, deal: Deal, write_back: bool = True) -> DeletionReport:
        """Delete every matching document of ``deal`` and report per candidate.

        Pass ``write_back=False`` when the deal itself no longer exists in the
        CRM. An unexpected error ends the deal's processing with an
        ``unexpected-error`` outcome instead of propagating, so other deals
        processed alongside it are unaffected.
        """
        report = DeletionReport(deal_id=deal.id)
        self.writer.remember(deal)

        try:
            await self._process(deal, report, write_back)
        except Exception as e:
            self._logger.exception("deletion_crashed", deal_id=deal.id)
            await self._record(
                report,
                deal,
                None,
                CandidateOutcome(None, None, DeletionOutcome.UNEXPECTED_ERROR, repr(e)),
            )
        return report

    async def _process(self, deal: Deal, report: DeletionReport, write_back: bool) -> None:
        log = self._logger.bind(deal_id=deal.id)

        try:
            candidates = await self.gather_candidates(deal)
        except CollaboratorError as e:
            log.error("deletion_candidates_unavailable", error=str(e))
            await self._record(
                report,
                deal,
                None,
                CandidateOutcome(None, None, DeletionOutcome.LEDGER_ERROR, str(e)),
            )
            return

        if not candidates:
            log.warning("deletion_no_candidates", expected_numbers=deal.document_numbers)
            await self._record(
                report, deal, None, CandidateOutcome(None, None, DeletionOutcome.NOT_FOUND)
            )
            return

        selected = self.filter_candidates(deal, candidates)
        if not selected:
            log.warning(
                "deletion_number_mismatch",
                expected_numbers=deal.document_numbers,
                candidate_numbers=[doc.number for doc in candidates],
            )
            await self._record(
                report,
                deal,
                None,
                CandidateOutcome(None, None, DeletionOutcome.NUMBER_MISMATCH),
                extra={"candidate_ids": [doc.id for doc in candidates]},
            )
            return

        for document in selected:
            outcome = await self._delete_one(deal, document)
            await self._record(report, deal, document, outcome)

        await self._complete_tasks(deal, selected, report)
        if write_back:
            await self._write_back(deal, report)

        log.info(
            "deletion_processed",
            deleted=report.deleted_ids,
            failed=[item.document_id for item in report.outcomes if not item.deleted],
            trigger_cleared=report.trigger_cleared,
        )

    async def process_many(
        self, deals: list[Deal], concurrency: int = 4, locks: DealLocks | None = None
    ) -> list[DeletionReport]:
        """Process several deals in parallel, at most ``concurrency`` at a time.

        Candidates of one deal are always handled sequentially. Pass ``locks``
        to serialize with other work on the same deals.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _bounded(deal: Deal) -> DeletionReport:
            async with semaphore:
                if locks is None:
                    return await self.process(deal)
                async with locks.hold(deal.id):
                    return await self.process(deal)

        return list(await asyncio.gather(*(_bounded(deal) for deal in deals)))

    async def _delete_one(self, deal: Deal, document: Document) -> CandidateOutcome:
        log = self._logger.bind(deal_id=deal.id, document_id=document.id)

        try:
            await self.backend.delete_document(document.id)
        except NotFoundError:
            log.info("backend_document_already_deleted")
        except CollaboratorError as e:
            log.error("backend_delete_failed", error=str(e), status=e.status_code)
            return CandidateOutcome(
                document.id, document.number, DeletionOutcome.BACKEND_ERROR, str(e)
            )
        except Exception as e:
            log.exception("backend_delete_crashed")
            return CandidateOutcome(
                document.id, document.number, DeletionOutcome.UNEXPECTED_ERROR, repr(e)
            )

        try:
            await self.ledger.mark_deleted(document.id, self.now())
        except CollaboratorError as e:
            log.error("ledger_mark_deleted_failed", error=str(e), status=e.status_code)
            return CandidateOutcome(
                document.id, document.number, DeletionOutcome.LEDGER_ERROR, str(e)
            )
        except Exception as e:
            log.exception("ledger_mark_deleted_crashed")
            return CandidateOutcome(
                document.id, document.number, DeletionOutcome.UNEXPECTED_ERROR, repr(e)
            )

        log.info("document_deleted", document_number=document.number)
        return CandidateOutcome(document.id, document.number, DeletionOutcome.DELETED)

    async def _record(
        self,
        report: DeletionReport,
        deal: Deal,
        document: Document | None,
        outcome: CandidateOutcome,
        extra: dict | None = None,
    ) -> None:
        metadata = {
            "expected_numbers": list(deal.document_numbers),
            "document_number": outcome.document_number,
        }
        if outcome.error:
            metadata["error"] = outcome.error
        if extra:
            metadata.update(extra)

        entry = DeletionLogEntry(
            deal_id=deal.id,
            status=outcome.outcome,
            document_id=outcome.document_id,
            snapshot=document.snapshot() if document else None,
            metadata=metadata,
            logged_at=self.now(),
        )
        report.outcomes.append(outcome)
        report.log_entries.append(entry)
        try:
            await self.retry.run(
                lambda: self.ledger.append_deletion_log(entry), label="append_deletion_log"
            )
        except (RetryExhaustedError, CollaboratorError) as e:
            self._logger.error(
                "deletion_log_append_failed",
                deal_id=deal.id,
                document_id=outcome.document_id,
                status=outcome.outcome.value,
                error=str(e),
            )
            report.log_error = str(e)

    async def _complete_tasks(
        self, deal: Deal, documents: list[Document], report: DeletionReport
    ) -> None:
        keys = [normalize_document_number(doc.number) for doc in documents if doc.number]
        if not keys:
            return
        try:
            raw_tasks = await self.trigger_source.list_deal_tasks(deal.id)
        except CollaboratorError as e:
            self._logger.warning("follow_up_tasks_unavailable", deal_id=deal.id, error=str(e))
            return

        for task in (FollowUpTask.from_crm(item) for item in raw_tasks):
            if task.done or task.id is None:
                continue
            haystack = normalize_document_number(f"{task.subject} {task.note}")
            if not any(key in haystack for key in keys):
                continue
            try:
                await self.trigger_source.complete_task(task.id)
            except CollaboratorError as e:
                self._logger.warning(
                    "follow_up_task_completion_failed",
                    deal_id=deal.id,
                    task_id=task.id,
                    error=str(e),
                )
                continue
            report.completed_task_ids.append(task.id)

    async def _write_back(self, deal: Deal, report: DeletionReport) -> None:
        deleted_ids = set(report.deleted_ids)
        if not deleted_ids:
            return

        update = DealStateUpdate(
            document_numbers=remove_document_numbers(deal.document_numbers, report.deleted_numbers),
            delete_document_ids=[i for i in deal.delete_document_ids if i not in deleted_ids],
        )
        if deal.document_id in deleted_ids:
            update.document_id = ""
        # The trigger stays set until every log entry is stored
        clear_trigger = report.all_deleted and report.log_error is None
        if clear_trigger:
            update.trigger = BillingTrigger.UNSET

        try:
            await self.writer.write_back(deal.id, update)
        except WriteBackError as e:
            report.write_back_error = str(e)
            return
        report.trigger_cleared = clear_trigger
