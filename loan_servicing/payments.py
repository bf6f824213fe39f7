"""
Payment Allocation

Applies incoming payments to a loan's unpaid installments in installment
order, interest before principal within each installment. A payment is
applied at most once per transaction reference. Anything left after every
installment is settled is parked on a reconciliation task.
"""

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from .audit import AuditSink, AuditAction
from .clock import ClockSource, SystemClock
from .dispatch import SideEffectDispatcher
from .errors import ValidationError, ScheduleNotFoundError, TransactionNotFoundError
from .locks import LoanLockRegistry
from .logging_config import get_logger, log_action
from .models import (
    Installment, InstallmentStatus,
    PaymentTransaction, PaymentStatus,
    ReconciliationTask, ReconciliationTaskType, ReconciliationTaskStatus,
    derive_installment_status
)
from .money import ZERO, Amount, to_decimal, round_money
from .notifications import NotificationSink, NotificationKind
from .repository import ServicingRepository

logger = get_logger("loan_servicing.payments")

DEFAULT_OVERPAYMENT_TOLERANCE = Decimal('0.01')


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of applying a payment"""
    transaction_id: str
    duplicate: bool                     # Reference was already applied; nothing changed
    principal_portion: Decimal
    interest_portion: Decimal
    unapplied_amount: Decimal           # Amount left after all installments were settled
    reconciliation_task_id: Optional[str]
    outstanding_balance: Optional[Decimal]


@dataclass
class InstallmentAllocation:
    """Share of a payment applied to one installment"""
    installment_number: int
    interest_portion: Decimal
    principal_portion: Decimal

    @property
    def amount(self) -> Decimal:
        return self.interest_portion + self.principal_portion


def allocate_payment(
    installments: List[Installment],
    amount: Decimal,
    today: date,
    paid_at=None
) -> Tuple[List[InstallmentAllocation], Decimal]:
    """
    Run the payment waterfall over installments, mutating them in place.

    Installments are visited in ascending installment number. Each one
    takes at most what it still owes, interest first. Returns the per
    installment allocations and the amount left over.
    """
    allocations = []
    remaining = amount

    for installment in sorted(installments, key=lambda x: x.installment_number):
        if remaining <= ZERO:
            break
        if installment.is_paid:
            continue

        outstanding = installment.outstanding
        if outstanding <= ZERO:
            continue

        allocation = min(remaining, outstanding)
        interest_portion = min(allocation, max(installment.interest_outstanding, ZERO))
        principal_portion = allocation - interest_portion

        installment.interest_paid += interest_portion
        installment.principal_paid += principal_portion
        installment.total_paid += allocation
        installment.status = derive_installment_status(
            installment.total_paid, installment.total_due, installment.due_date, today
        )
        if installment.status == InstallmentStatus.PAID:
            installment.paid_date = paid_at
            installment.days_past_due = 0
        if paid_at is not None:
            installment.updated_at = paid_at

        allocations.append(InstallmentAllocation(
            installment_number=installment.installment_number,
            interest_portion=interest_portion,
            principal_portion=principal_portion
        ))
        remaining -= allocation

    return allocations, remaining


class PaymentAllocator:
    """
    Records payments against repayment schedules
    """

    def __init__(
        self,
        repository: ServicingRepository,
        audit: Optional[AuditSink] = None,
        notifications: Optional[NotificationSink] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
        clock: Optional[ClockSource] = None,
        locks: Optional[LoanLockRegistry] = None,
        overpayment_tolerance: Amount = DEFAULT_OVERPAYMENT_TOLERANCE
    ):
        self.repository = repository
        self.audit = audit
        self.notifications = notifications
        self.dispatcher = dispatcher or SideEffectDispatcher()
        self.clock = clock or SystemClock()
        self.locks = locks or LoanLockRegistry()
        self.overpayment_tolerance = to_decimal(overpayment_tolerance)

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
        """
        Apply a payment to a loan's outstanding installments

        Args:
            loan_id: Loan being repaid
            client_id: Borrower
            transaction_reference: Unique reference of the payment; replays return the first result
            payment_method: e.g. Cash, BankTransfer, MobileMoney
            payment_source: Channel the payment arrived through
            amount: Amount received, positive
            transaction_date: Value date of the payment
            external_reference: Reference from the payment provider
            notes: Free text
            actor: User or component recording the payment
            correlation_id: Request correlation ID

        Returns:
            PaymentResult describing how the payment was applied

        Raises:
            ValidationError: If the amount or reference is invalid
            ScheduleNotFoundError: If the loan has no repayment schedule
        """
        payment_amount = self._validate(loan_id, transaction_reference, amount)
        correlation_id = correlation_id or str(uuid.uuid4())

        existing = self.repository.get_transaction_by_reference(transaction_reference)
        if existing:
            return self._duplicate_result(existing, correlation_id)

        with self.locks.hold(f"reference:{transaction_reference}"), self.locks.hold(loan_id):
            # Re-check under the locks so concurrent replays apply once
            existing = self.repository.get_transaction_by_reference(transaction_reference)
            if existing:
                return self._duplicate_result(existing, correlation_id)

            schedule = self.repository.get_schedule_by_loan(loan_id)
            if schedule is None:
                raise ScheduleNotFoundError(loan_id)

            now = self.clock.now()
            allocations, remaining = allocate_payment(
                schedule.installments, payment_amount, self.clock.today(), paid_at=now
            )

            for allocation in allocations:
                log_action(
                    logger, "debug",
                    f"Allocated {allocation.amount} to installment {allocation.installment_number} "
                    f"(interest {allocation.interest_portion}, principal {allocation.principal_portion})",
                    loan_id=loan_id, action="installment_allocated", correlation_id=correlation_id
                )

            touched = [schedule.get_installment(a.installment_number) for a in allocations]
            principal_portion = sum((a.principal_portion for a in allocations), ZERO)
            interest_portion = sum((a.interest_portion for a in allocations), ZERO)

            transaction = PaymentTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                client_id=client_id,
                transaction_reference=transaction_reference,
                payment_method=payment_method,
                payment_source=payment_source,
                amount=payment_amount,
                transaction_date=transaction_date,
                received_date=now,
                status=PaymentStatus.CONFIRMED,
                principal_portion=principal_portion,
                interest_portion=interest_portion,
                external_reference=external_reference,
                notes=notes,
                created_by=actor,
                correlation_id=correlation_id
            )

            # Link the installment only when the payment settled exactly one
            if len(touched) == 1 and touched[0].is_paid:
                transaction.installment_number = touched[0].installment_number

            reconciliation_task = None
            if remaining > self.overpayment_tolerance:
                reconciliation_task = ReconciliationTask(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    payment_transaction_id=transaction.id,
                    task_type=ReconciliationTaskType.OVER_PAYMENT,
                    status=ReconciliationTaskStatus.PENDING,
                    description=(
                        f"Payment {transaction_reference} of {payment_amount} exceeds "
                        f"outstanding balance by {remaining}"
                    ),
                    expected_amount=payment_amount - remaining,
                    actual_amount=payment_amount,
                    variance=remaining,
                    created_by=actor,
                    correlation_id=correlation_id
                )

            self.repository.commit_payment(transaction, touched, reconciliation_task)

            outstanding_balance = schedule.outstanding_balance

        log_action(
            logger, "info",
            f"Processed payment {transaction_reference} of {payment_amount} for loan {loan_id}: "
            f"interest {interest_portion}, principal {principal_portion}",
            loan_id=loan_id, actor=actor, action="payment_processed",
            correlation_id=correlation_id,
            extra={"transaction_id": transaction.id, "installments": len(allocations)}
        )
        if reconciliation_task:
            log_action(
                logger, "warning",
                f"Overpayment of {remaining} on payment {transaction_reference}, "
                f"reconciliation task {reconciliation_task.id} created",
                loan_id=loan_id, actor=actor, action="reconciliation_required",
                correlation_id=correlation_id
            )

        self._emit_payment_processed(transaction, remaining, outstanding_balance)

        return PaymentResult(
            transaction_id=transaction.id,
            duplicate=False,
            principal_portion=principal_portion,
            interest_portion=interest_portion,
            unapplied_amount=remaining,
            reconciliation_task_id=reconciliation_task.id if reconciliation_task else None,
            outstanding_balance=outstanding_balance
        )

    def _emit_payment_processed(
        self,
        transaction: PaymentTransaction,
        unapplied: Decimal,
        outstanding_balance: Decimal
    ) -> None:
        if self.audit:
            self.dispatcher.submit(
                f"audit {AuditAction.PAYMENT_PROCESSED} {transaction.id}",
                self.audit.log_event,
                timestamp=transaction.received_date,
                actor=transaction.created_by,
                action=AuditAction.PAYMENT_PROCESSED,
                entity_type="PaymentTransaction",
                entity_id=transaction.id,
                correlation_id=transaction.correlation_id,
                data={
                    "loan_id": transaction.loan_id,
                    "transaction_reference": transaction.transaction_reference,
                    "amount": transaction.amount,
                    "principal_portion": transaction.principal_portion,
                    "interest_portion": transaction.interest_portion,
                    "unapplied_amount": unapplied,
                    "payment_method": transaction.payment_method
                }
            )

        if self.notifications:
            self.dispatcher.submit(
                f"notify {NotificationKind.PAYMENT_CONFIRMATION.value} {transaction.id}",
                self.notifications.notify,
                kind=NotificationKind.PAYMENT_CONFIRMATION,
                loan_id=transaction.loan_id,
                client_id=transaction.client_id,
                payload={
                    "transaction_id": transaction.id,
                    "transaction_reference": transaction.transaction_reference,
                    "amount": transaction.amount,
                    "transaction_date": transaction.transaction_date,
                    "payment_method": transaction.payment_method,
                    "remaining_balance": outstanding_balance
                },
                correlation_id=transaction.correlation_id
            )

    def _duplicate_result(self, transaction: PaymentTransaction, correlation_id: str) -> PaymentResult:
        log_action(
            logger, "info",
            f"Payment {transaction.transaction_reference} already processed as {transaction.id}",
            loan_id=transaction.loan_id, action="payment_duplicate", correlation_id=correlation_id
        )
        tasks = self.repository.get_reconciliation_tasks_for_transaction(transaction.id)
        unapplied = tasks[0].variance if tasks else transaction.amount - transaction.applied_amount
        schedule = self.repository.get_schedule_by_loan(transaction.loan_id)

        return PaymentResult(
            transaction_id=transaction.id,
            duplicate=True,
            principal_portion=transaction.principal_portion,
            interest_portion=transaction.interest_portion,
            unapplied_amount=unapplied,
            reconciliation_task_id=tasks[0].id if tasks else None,
            outstanding_balance=schedule.outstanding_balance if schedule else None
        )

    def _validate(self, loan_id: str, transaction_reference: str, amount: Amount) -> Decimal:
        if not loan_id:
            raise ValidationError("Loan id is required")
        if not transaction_reference:
            raise ValidationError("Transaction reference is required")

        try:
            payment_amount = to_decimal(amount)
        except (TypeError, InvalidOperation) as e:
            raise ValidationError(f"Invalid payment amount: {e}") from e

        if not payment_amount.is_finite() or payment_amount <= ZERO:
            raise ValidationError(f"Payment amount must be positive, got {amount}")
        if round_money(payment_amount) != payment_amount:
            raise ValidationError(f"Payment amount must be in whole cents, got {amount}")

        return round_money(payment_amount)

    # Queries and reconciliation

    def get_transaction(self, transaction_id: str) -> PaymentTransaction:
        transaction = self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    def get_transaction_by_reference(self, transaction_reference: str) -> PaymentTransaction:
        transaction = self.repository.get_transaction_by_reference(transaction_reference)
        if transaction is None:
            raise TransactionNotFoundError(transaction_reference)
        return transaction

    def get_payment_history(self, loan_id: str) -> List[PaymentTransaction]:
        """Payments for a loan, most recent transaction date first"""
        transactions = self.repository.get_transactions_for_loan(loan_id)
        transactions.sort(key=lambda x: (x.transaction_date, x.received_date), reverse=True)
        return transactions

    def get_unreconciled_payments(self, page: int = 1, page_size: int = 50) -> List[PaymentTransaction]:
        """Payments awaiting reconciliation, oldest transaction date first"""
        if page < 1 or page_size < 1:
            raise ValidationError("Page and page size must be positive")

        transactions = self.repository.get_unreconciled_transactions()
        transactions.sort(key=lambda x: (x.transaction_date, x.received_date))
        start = (page - 1) * page_size
        return transactions[start:start + page_size]

    def get_reconciliation_tasks(
        self,
        status: Optional[ReconciliationTaskStatus] = None
    ) -> List[ReconciliationTask]:
        return self.repository.get_reconciliation_tasks(status)

    def reconcile_payment(
        self,
        transaction_id: str,
        reconciled_by: str,
        notes: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> PaymentTransaction:
        """
        Mark a payment as reconciled

        Reconciling an already reconciled payment returns it unchanged.

        Raises:
            TransactionNotFoundError: If no payment has this id
        """
        transaction = self.get_transaction(transaction_id)

        with self.locks.hold(transaction.loan_id):
            transaction = self.get_transaction(transaction_id)
            if transaction.is_reconciled:
                logger.info(f"Payment {transaction_id} is already reconciled")
                return transaction

            now = self.clock.now()
            transaction.is_reconciled = True
            transaction.reconciled_at = now
            transaction.reconciled_by = reconciled_by
            transaction.status = PaymentStatus.RECONCILED
            if notes is not None:
                transaction.notes = notes
            transaction.updated_at = now

            self.repository.save_transaction(transaction)

        log_action(
            logger, "info", f"Payment {transaction_id} reconciled by {reconciled_by}",
            loan_id=transaction.loan_id, actor=reconciled_by, action="payment_reconciled",
            correlation_id=correlation_id
        )

        if self.audit:
            self.dispatcher.submit(
                f"audit {AuditAction.PAYMENT_RECONCILED} {transaction_id}",
                self.audit.log_event,
                timestamp=now,
                actor=reconciled_by,
                action=AuditAction.PAYMENT_RECONCILED,
                entity_type="PaymentTransaction",
                entity_id=transaction_id,
                correlation_id=correlation_id or transaction.correlation_id,
                data={
                    "loan_id": transaction.loan_id,
                    "transaction_reference": transaction.transaction_reference,
                    "amount": transaction.amount,
                    "notes": notes
                }
            )

        return transaction
