"""
Arrears Classification

Recomputes days past due for a loan's unpaid installments and maps the worst
one onto the regulatory classification table. The classification ledger only
grows when a loan's classification changes, so re-running a classification
with unchanged arrears is a no-op.
"""

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Tuple

from .audit import AuditSink, AuditAction
from .clock import ClockSource
from .dispatch import SideEffectDispatcher
from .errors import ScheduleNotFoundError
from .locks import LoanLockRegistry
from .logging_config import get_logger, log_action
from .models import (
    RepaymentSchedule, Installment, InstallmentStatus,
    ArrearsClassificationRecord, Classification,
    classify_days_past_due, days_past_due
)
from .notifications import NotificationSink, NotificationKind
from .repository import ServicingRepository

logger = get_logger("loan_servicing.arrears")


@dataclass(frozen=True)
class ClassificationOutcome:
    """Result of classifying one loan"""
    loan_id: str
    previous: Classification
    new: Classification
    days_past_due: int
    changed: bool
    history_id: Optional[str] = None    # Ledger entry written when changed


def refresh_arrears(installments: List[Installment], today: date) -> Tuple[int, List[Installment]]:
    """
    Recompute days past due on unpaid installments, mutating them in place.

    Pending installments past their due date become Overdue, and rows with
    nothing outstanding are settled as Paid. Returns the maximum days past
    due and the installments whose state changed.
    """
    max_dpd = 0
    changed = []

    for installment in installments:
        if installment.is_paid:
            if installment.status != InstallmentStatus.PAID:
                installment.status = InstallmentStatus.PAID
                installment.days_past_due = 0
                changed.append(installment)
            continue

        dpd = days_past_due(installment.due_date, today)
        status = installment.status
        if dpd > 0 and status == InstallmentStatus.PENDING:
            status = InstallmentStatus.OVERDUE

        if dpd != installment.days_past_due or status != installment.status:
            installment.days_past_due = dpd
            installment.status = status
            changed.append(installment)

        max_dpd = max(max_dpd, dpd)

    return max_dpd, changed


class ArrearsClassifier:
    """
    Classifies loans into regulatory arrears buckets with provisioning
    """

    def __init__(
        self,
        repository: ServicingRepository,
        clock: ClockSource,
        audit: Optional[AuditSink] = None,
        notifications: Optional[NotificationSink] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
        locks: Optional[LoanLockRegistry] = None,
        system_actor: str = "System"
    ):
        self.repository = repository
        self.clock = clock
        self.audit = audit
        self.notifications = notifications
        self.dispatcher = dispatcher or SideEffectDispatcher()
        self.locks = locks or LoanLockRegistry()
        self.system_actor = system_actor

    def classify_loan(self, loan_id: str, correlation_id: Optional[str] = None) -> ClassificationOutcome:
        """
        Reclassify a single loan as of the clock's today

        Args:
            loan_id: Loan to classify
            correlation_id: Correlation ID; a new one is generated when omitted

        Returns:
            ClassificationOutcome, with changed=False when the class did not move

        Raises:
            ScheduleNotFoundError: If the loan has no repayment schedule
        """
        correlation_id = correlation_id or str(uuid.uuid4())

        with self.locks.hold(loan_id):
            schedule = self.repository.get_schedule_by_loan(loan_id)
            if schedule is None:
                raise ScheduleNotFoundError(loan_id)

            now = self.clock.now()
            max_dpd, refreshed = refresh_arrears(schedule.installments, now.date())
            for installment in refreshed:
                installment.updated_at = now

            new_classification = classify_days_past_due(max_dpd)
            latest = self.repository.get_latest_classification(loan_id)
            previous_classification = latest.new_classification if latest else Classification.CURRENT

            if new_classification == previous_classification:
                if refreshed:
                    self.repository.commit_classification(refreshed)
                log_action(
                    logger, "debug",
                    f"Loan {loan_id} remains {new_classification.value} ({max_dpd} DPD)",
                    loan_id=loan_id, action="classification_unchanged", correlation_id=correlation_id
                )
                return ClassificationOutcome(
                    loan_id=loan_id,
                    previous=previous_classification,
                    new=new_classification,
                    days_past_due=max_dpd,
                    changed=False
                )

            record = self._build_record(
                schedule, previous_classification, new_classification, max_dpd,
                sequence=(latest.sequence if latest else 0) + 1,
                correlation_id=correlation_id
            )
            self.repository.commit_classification(refreshed, record)

        log_action(
            logger, "info",
            f"Loan {loan_id} reclassified from {previous_classification.value} to "
            f"{new_classification.value} ({max_dpd} DPD, provision {record.provision_amount})",
            loan_id=loan_id, actor=self.system_actor, action="loan_reclassified",
            correlation_id=correlation_id
        )

        self._emit_reclassified(schedule, record)

        return ClassificationOutcome(
            loan_id=loan_id,
            previous=previous_classification,
            new=new_classification,
            days_past_due=max_dpd,
            changed=True,
            history_id=record.id
        )

    def classify_all_loans(self) -> int:
        """
        Classify every loan on the book one after another.

        A failure on one loan is logged and the run moves on. Returns the
        number of loans classified successfully.
        """
        loan_ids = self.repository.list_loan_ids()
        logger.info(f"Starting arrears classification for {len(loan_ids)} loans")

        classified_count = 0
        for loan_id in loan_ids:
            try:
                self.classify_loan(loan_id)
                classified_count += 1
            except Exception as e:
                log_action(
                    logger, "error", f"Failed to classify loan {loan_id}: {e}",
                    loan_id=loan_id, action="classification_failed", exc_info=True
                )

        logger.info(f"Completed arrears classification. Classified {classified_count} loans")
        return classified_count

    def _build_record(
        self,
        schedule: RepaymentSchedule,
        previous: Classification,
        new: Classification,
        max_dpd: int,
        sequence: int,
        correlation_id: str
    ) -> ArrearsClassificationRecord:
        now = self.clock.now()
        outstanding_balance = schedule.outstanding_balance

        return ArrearsClassificationRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=schedule.loan_id,
            previous_classification=previous,
            new_classification=new,
            days_past_due=max_dpd,
            outstanding_balance=outstanding_balance,
            provision_rate=new.provision_rate,
            provision_amount=outstanding_balance * new.provision_rate,
            is_non_accrual=new.is_non_accrual,
            classified_at=now,
            classified_by=self.system_actor,
            reason=f"BoZ classification - {max_dpd} days past due",
            correlation_id=correlation_id,
            sequence=sequence
        )

    def _emit_reclassified(self, schedule: RepaymentSchedule, record: ArrearsClassificationRecord) -> None:
        if self.audit:
            self.dispatcher.submit(
                f"audit {AuditAction.LOAN_RECLASSIFIED} {record.loan_id}",
                self.audit.log_event,
                timestamp=record.classified_at,
                actor=self.system_actor,
                action=AuditAction.LOAN_RECLASSIFIED,
                entity_type="ArrearsClassification",
                entity_id=record.id,
                correlation_id=record.correlation_id,
                data={
                    "loan_id": record.loan_id,
                    "previous_classification": record.previous_classification,
                    "new_classification": record.new_classification,
                    "days_past_due": record.days_past_due,
                    "provision_amount": record.provision_amount,
                    "is_non_accrual": record.is_non_accrual
                }
            )

        # SpecialMention and recoveries to Current are not borrower-facing
        if self.notifications and record.new_classification.is_significant:
            self.dispatcher.submit(
                f"notify {NotificationKind.CLASSIFICATION_CHANGED.value} {record.loan_id}",
                self.notifications.notify,
                kind=NotificationKind.CLASSIFICATION_CHANGED,
                loan_id=record.loan_id,
                client_id=schedule.client_id,
                payload={
                    "previous_classification": record.previous_classification,
                    "classification": record.new_classification,
                    "days_past_due": record.days_past_due,
                    "outstanding_balance": record.outstanding_balance
                },
                correlation_id=record.correlation_id
            )

    # Queries

    def get_days_past_due(self, loan_id: str, as_of: Optional[date] = None) -> int:
        """Maximum days past due across unpaid installments, without writing"""
        schedule = self.repository.get_schedule_by_loan(loan_id)
        if schedule is None:
            raise ScheduleNotFoundError(loan_id)

        today = as_of or self.clock.today()
        return max(
            (days_past_due(i.due_date, today) for i in schedule.installments if not i.is_paid),
            default=0
        )

    def get_current_classification(self, loan_id: str) -> Classification:
        latest = self.repository.get_latest_classification(loan_id)
        return latest.new_classification if latest else Classification.CURRENT

    def get_classification_history(self, loan_id: str) -> List[ArrearsClassificationRecord]:
        """Classification changes for a loan, most recent first"""
        return self.repository.get_classification_history(loan_id)

    def get_arrears_summary(self) -> Dict[Classification, int]:
        """Number of loans in each classification; every class is present"""
        summary = {classification: 0 for classification in Classification}

        latest: Dict[str, ArrearsClassificationRecord] = {}
        for record in self.repository.get_all_classification_history():
            current = latest.get(record.loan_id)
            if current is None or record.sequence > current.sequence:
                latest[record.loan_id] = record

        for loan_id in self.repository.list_loan_ids():
            record = latest.get(loan_id)
            summary[record.new_classification if record else Classification.CURRENT] += 1

        return summary
