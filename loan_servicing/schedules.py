"""
Repayment Schedule Generation

Builds the fixed-payment (annuity) amortization schedule for a loan at
disbursement. Generation is idempotent per loan: a second request returns the
schedule that already exists.
"""

import calendar
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from .audit import AuditSink, AuditAction
from .clock import ClockSource, SystemClock
from .dispatch import SideEffectDispatcher
from .errors import ValidationError
from .locks import LoanLockRegistry
from .logging_config import get_logger, log_action
from .models import RepaymentSchedule, Installment, InstallmentStatus
from .money import ZERO, Amount, to_decimal, round_money
from .repository import ServicingRepository

logger = get_logger("loan_servicing.schedules")

MONTHS_PER_YEAR = Decimal('12')


@dataclass(frozen=True)
class ScheduleGenerationResult:
    """Outcome of a schedule generation request"""
    schedule_id: str
    created: bool           # False when the loan already had a schedule


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_monthly_payment(principal: Decimal, annual_rate: Decimal, term_months: int) -> Decimal:
    """
    Fixed monthly payment, rounded to cents.

    Standard loan payment formula: P * [r(1+r)^n] / [(1+r)^n - 1]
    where r = annual_rate / 12 and n = term_months; P / n when r is zero.
    """
    periodic_rate = annual_rate / MONTHS_PER_YEAR
    num_payments = Decimal(term_months)

    if periodic_rate == 0:
        return round_money(principal / num_payments)

    factor = (Decimal('1') + periodic_rate) ** term_months
    return round_money(principal * (periodic_rate * factor) / (factor - Decimal('1')))


def build_installments(
    schedule_id: str,
    principal: Decimal,
    annual_rate: Decimal,
    term_months: int,
    first_payment_date: date,
    created_at
) -> List[Installment]:
    """
    Derive the installments of an annuity schedule.

    Every installment but the last has total due equal to the rounded
    monthly payment. The last takes whatever principal remains, so the
    principal column always sums to the loan principal exactly.
    """
    periodic_rate = annual_rate / MONTHS_PER_YEAR
    payment = calculate_monthly_payment(principal, annual_rate, term_months)

    installments = []
    remaining_balance = principal

    for number in range(1, term_months + 1):
        interest_due = round_money(remaining_balance * periodic_rate)

        if number == term_months:
            principal_due = remaining_balance
        else:
            principal_due = min(round_money(payment - interest_due), remaining_balance)

        remaining_balance -= principal_due
        total_due = principal_due + interest_due

        installments.append(Installment(
            id=f"{schedule_id}_{number}",
            created_at=created_at,
            updated_at=created_at,
            schedule_id=schedule_id,
            installment_number=number,
            due_date=add_months(first_payment_date, number - 1),
            principal_due=principal_due,
            interest_due=interest_due,
            total_due=total_due,
            principal_balance=remaining_balance,
            # Nothing to collect on a zero-due row
            status=InstallmentStatus.PAID if total_due <= ZERO else InstallmentStatus.PENDING
        ))

    return installments


class ScheduleGenerator:
    """
    Generates and looks up repayment schedules
    """

    def __init__(
        self,
        repository: ServicingRepository,
        audit: Optional[AuditSink] = None,
        dispatcher: Optional[SideEffectDispatcher] = None,
        clock: Optional[ClockSource] = None,
        locks: Optional[LoanLockRegistry] = None
    ):
        self.repository = repository
        self.audit = audit
        self.dispatcher = dispatcher or SideEffectDispatcher()
        self.clock = clock or SystemClock()
        self.locks = locks or LoanLockRegistry()

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
        """
        Generate the repayment schedule for a loan

        Args:
            loan_id: Loan the schedule belongs to
            client_id: Borrower
            product_code: Loan product
            principal: Amount disbursed, must be positive
            annual_rate: Nominal annual rate as a fraction (0.24 for 24%)
            term_months: Number of monthly installments, at least 1
            first_payment_date: Due date of installment 1
            actor: User or component requesting generation
            correlation_id: Request correlation ID

        Returns:
            ScheduleGenerationResult with the new or existing schedule id

        Raises:
            ValidationError: If any input is out of range
        """
        principal_amount, rate = self._validate(loan_id, principal, annual_rate, term_months)
        correlation_id = correlation_id or str(uuid.uuid4())

        with self.locks.hold(loan_id):
            existing_id = self.repository.schedule_exists(loan_id)
            if existing_id:
                log_action(
                    logger, "info", f"Repayment schedule already exists for loan {loan_id}",
                    loan_id=loan_id, actor=actor, action="schedule_exists",
                    correlation_id=correlation_id
                )
                return ScheduleGenerationResult(schedule_id=existing_id, created=False)

            now = self.clock.now()
            schedule_id = str(uuid.uuid4())

            schedule = RepaymentSchedule(
                id=schedule_id,
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                client_id=client_id,
                product_code=product_code,
                principal_amount=principal_amount,
                interest_rate=rate,
                term_months=term_months,
                first_payment_date=first_payment_date,
                maturity_date=add_months(first_payment_date, term_months - 1),
                generated_at=now,
                generated_by=actor,
                correlation_id=correlation_id,
                installments=build_installments(
                    schedule_id, principal_amount, rate, term_months, first_payment_date, now
                )
            )

            self.repository.save_schedule(schedule)

        monthly_payment = schedule.installments[0].total_due
        log_action(
            logger, "info",
            f"Generated repayment schedule {schedule_id} for loan {loan_id} "
            f"with {term_months} installments of {monthly_payment}",
            loan_id=loan_id, actor=actor, action="schedule_generated",
            correlation_id=correlation_id
        )

        if self.audit:
            self.dispatcher.submit(
                f"audit {AuditAction.SCHEDULE_GENERATED} {schedule_id}",
                self.audit.log_event,
                timestamp=now,
                actor=actor,
                action=AuditAction.SCHEDULE_GENERATED,
                entity_type="RepaymentSchedule",
                entity_id=schedule_id,
                correlation_id=correlation_id,
                data={
                    "loan_id": loan_id,
                    "client_id": client_id,
                    "principal_amount": principal_amount,
                    "interest_rate": rate,
                    "term_months": term_months,
                    "monthly_payment": monthly_payment,
                    "maturity_date": schedule.maturity_date
                }
            )

        return ScheduleGenerationResult(schedule_id=schedule_id, created=True)

    def get_schedule_by_loan(self, loan_id: str) -> Optional[RepaymentSchedule]:
        """Schedule with installments in number order, or None"""
        return self.repository.get_schedule_by_loan(loan_id)

    def _validate(self, loan_id, principal, annual_rate, term_months):
        if not loan_id:
            raise ValidationError("Loan id is required")

        try:
            principal_amount = to_decimal(principal)
            rate = to_decimal(annual_rate)
        except (TypeError, InvalidOperation) as e:
            raise ValidationError(f"Invalid principal or rate: {e}") from e

        if not principal_amount.is_finite() or principal_amount <= ZERO:
            raise ValidationError(f"Principal must be positive, got {principal}")
        if round_money(principal_amount) != principal_amount:
            raise ValidationError(f"Principal must be in whole cents, got {principal}")
        if not rate.is_finite() or rate < 0:
            raise ValidationError(f"Annual rate cannot be negative, got {annual_rate}")
        if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months < 1:
            raise ValidationError(f"Term must be at least 1 month, got {term_months}")

        return round_money(principal_amount), rate
