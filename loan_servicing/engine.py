"""
Loan Servicing Engine

Wires storage, audit, notifications and the three servicing components
together and exposes the operations callers use. Every operation is
synchronous and returns a typed result or raises a typed error.
"""

from datetime import date
from typing import Dict, List, Optional

from .arrears import ArrearsClassifier, ClassificationOutcome
from .audit import AuditSink, AuditTrail
from .batch import ClassificationBatchRunner, BatchRunResult
from .clock import ClockSource, SystemClock
from .config import ServicingConfig, get_config
from .dispatch import SideEffectDispatcher
from .locks import LoanLockRegistry
from .logging_config import get_logger
from .models import (
    RepaymentSchedule, PaymentTransaction, ReconciliationTask, ReconciliationTaskStatus,
    ArrearsClassificationRecord, Classification
)
from .money import Amount
from .notifications import NotificationSink, StoredNotificationSink, WebhookNotificationSink
from .payments import PaymentAllocator, PaymentResult, DEFAULT_OVERPAYMENT_TOLERANCE
from .repository import ServicingRepository
from .schedules import ScheduleGenerator, ScheduleGenerationResult
from .storage import StorageInterface, create_storage

logger = get_logger("loan_servicing.engine")


class LoanServicingEngine:
    """
    Caller-facing facade over schedule generation, payment allocation
    and arrears classification
    """

    def __init__(
        self,
        storage: StorageInterface,
        clock: Optional[ClockSource] = None,
        audit: Optional[AuditSink] = None,
        notifications: Optional[NotificationSink] = None,
        background_side_effects: bool = False,
        classification_workers: int = 4,
        classification_timeout: Optional[float] = None,
        overpayment_tolerance: Amount = DEFAULT_OVERPAYMENT_TOLERANCE,
        system_actor: str = "System"
    ):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit = audit
        self.notifications = notifications
        self.repository = ServicingRepository(storage)
        self.locks = LoanLockRegistry()
        self.dispatcher = SideEffectDispatcher(background=background_side_effects)

        self.schedules = ScheduleGenerator(
            self.repository, audit=audit, dispatcher=self.dispatcher,
            clock=self.clock, locks=self.locks
        )
        self.payments = PaymentAllocator(
            self.repository, audit=audit, notifications=notifications,
            dispatcher=self.dispatcher, clock=self.clock, locks=self.locks,
            overpayment_tolerance=overpayment_tolerance
        )
        self.arrears = ArrearsClassifier(
            self.repository, self.clock, audit=audit, notifications=notifications,
            dispatcher=self.dispatcher, locks=self.locks, system_actor=system_actor
        )
        self.batch = ClassificationBatchRunner(
            self.arrears, max_workers=classification_workers, timeout=classification_timeout
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[ServicingConfig] = None,
        clock: Optional[ClockSource] = None
    ) -> 'LoanServicingEngine':
        """Build an engine from ServicingConfig (environment by default)"""
        config = config or get_config()
        storage = create_storage(config.database_url)

        audit = AuditTrail(storage) if config.enable_audit_logging else None

        if config.notification_webhook_url:
            notifications: NotificationSink = WebhookNotificationSink(
                config.notification_webhook_url,
                timeout=config.notification_timeout,
                api_key=config.notification_api_key or None
            )
        else:
            notifications = StoredNotificationSink(storage)

        logger.info(f"Loan servicing engine using {type(storage).__name__}")

        return cls(
            storage,
            clock=clock,
            audit=audit,
            notifications=notifications,
            background_side_effects=config.background_side_effects,
            classification_workers=config.classification_workers,
            classification_timeout=config.classification_timeout,
            overpayment_tolerance=config.overpayment_tolerance,
            system_actor=config.system_actor
        )

    # Schedules

    def generate_schedule(
        self,
        loan_id: str,
        client_id: str,
        product_code: str,
        principal: Amount,
        annual_rate: Amount,
        term_months: int,
        first_payment_date: date,
        actor: str = "System",
        correlation_id: Optional[str] = None
    ) -> ScheduleGenerationResult:
        return self.schedules.generate_schedule(
            loan_id, client_id, product_code, principal, annual_rate,
            term_months, first_payment_date, actor=actor, correlation_id=correlation_id
        )

    def get_schedule_by_loan(self, loan_id: str) -> Optional[RepaymentSchedule]:
        return self.schedules.get_schedule_by_loan(loan_id)

    # Payments

    def apply_payment(
        self,
        loan_id: str,
        client_id: str,
        transaction_reference: str,
        payment_method: str,
        payment_source: str,
        amount: Amount,
        transaction_date: date,
        external_reference: Optional[str] = None,
        notes: Optional[str] = None,
        actor: str = "System",
        correlation_id: Optional[str] = None
    ) -> PaymentResult:
        return self.payments.apply_payment(
            loan_id, client_id, transaction_reference, payment_method, payment_source,
            amount, transaction_date, external_reference=external_reference, notes=notes,
            actor=actor, correlation_id=correlation_id
        )

    def get_payment_history(self, loan_id: str) -> List[PaymentTransaction]:
        return self.payments.get_payment_history(loan_id)

    def get_transaction(self, transaction_id: str) -> PaymentTransaction:
        return self.payments.get_transaction(transaction_id)

    def reconcile_payment(
        self,
        transaction_id: str,
        reconciled_by: str,
        notes: Optional[str] = None
    ) -> PaymentTransaction:
        return self.payments.reconcile_payment(transaction_id, reconciled_by, notes)

    def get_unreconciled_payments(self, page: int = 1, page_size: int = 50) -> List[PaymentTransaction]:
        return self.payments.get_unreconciled_payments(page, page_size)

    def get_reconciliation_tasks(
        self,
        status: Optional[ReconciliationTaskStatus] = None
    ) -> List[ReconciliationTask]:
        return self.payments.get_reconciliation_tasks(status)

    # Classification

    def classify_loan(self, loan_id: str, correlation_id: Optional[str] = None) -> ClassificationOutcome:
        return self.arrears.classify_loan(loan_id, correlation_id=correlation_id)

    def run_nightly_classification(self) -> BatchRunResult:
        """Classify the whole loan book on the bounded worker pool"""
        return self.batch.run()

    def classify_all_loans(self) -> int:
        """Number of loans classified successfully in a full pass"""
        return self.run_nightly_classification().classified_count

    def get_classification_history(self, loan_id: str) -> List[ArrearsClassificationRecord]:
        return self.arrears.get_classification_history(loan_id)

    def get_current_classification(self, loan_id: str) -> Classification:
        return self.arrears.get_current_classification(loan_id)

    def get_days_past_due(self, loan_id: str, as_of: Optional[date] = None) -> int:
        return self.arrears.get_days_past_due(loan_id, as_of)

    def get_arrears_summary(self) -> Dict[Classification, int]:
        return self.arrears.get_arrears_summary()

    # Lifecycle

    def flush_side_effects(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued audit and notification delivery"""
        return self.dispatcher.flush(timeout)

    def close(self, cancel_pending: bool = False) -> None:
        self.dispatcher.shutdown(cancel_pending=cancel_pending)
        if isinstance(self.notifications, WebhookNotificationSink):
            self.notifications.close()
        self.storage.close()
