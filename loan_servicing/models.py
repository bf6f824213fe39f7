"""
Servicing Data Model

Repayment schedules with their installments, payment transactions,
reconciliation tasks and the append-only arrears classification ledger.
Status and classification fields are closed enums; the regulatory
classification table is a total function over days past due.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum

from .money import ZERO
from .storage import StorageRecord


class InstallmentStatus(Enum):
    """Installment repayment states"""
    PENDING = "Pending"                # Not yet due, nothing paid
    OVERDUE = "Overdue"                # Past due date, nothing paid
    PARTIALLY_PAID = "PartiallyPaid"   # Some but not all of total due paid
    PAID = "Paid"                      # Fully settled


class PaymentStatus(Enum):
    """Payment transaction states"""
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    RECONCILED = "Reconciled"


class ReconciliationTaskType(Enum):
    """Reasons a payment needs manual reconciliation"""
    OVER_PAYMENT = "OverPayment"


class ReconciliationTaskStatus(Enum):
    """Reconciliation task lifecycle"""
    PENDING = "Pending"
    RESOLVED = "Resolved"


class Classification(Enum):
    """Regulatory loan classification buckets"""
    CURRENT = "Current"
    SPECIAL_MENTION = "SpecialMention"
    SUBSTANDARD = "Substandard"
    DOUBTFUL = "Doubtful"
    LOSS = "Loss"

    @property
    def provision_rate(self) -> Decimal:
        """Share of outstanding balance to provision for this bucket"""
        return PROVISION_RATES[self]

    @property
    def is_non_accrual(self) -> bool:
        """Interest income recognition is suspended for these buckets"""
        return self in NON_ACCRUAL_CLASSIFICATIONS

    @property
    def is_significant(self) -> bool:
        """Buckets severe enough to notify the borrower"""
        return self in NON_ACCRUAL_CLASSIFICATIONS


PROVISION_RATES: Dict[Classification, Decimal] = {
    Classification.CURRENT: Decimal('0.00'),
    Classification.SPECIAL_MENTION: Decimal('0.00'),
    Classification.SUBSTANDARD: Decimal('0.20'),
    Classification.DOUBTFUL: Decimal('0.50'),
    Classification.LOSS: Decimal('1.00'),
}

NON_ACCRUAL_CLASSIFICATIONS = frozenset({
    Classification.SUBSTANDARD,
    Classification.DOUBTFUL,
    Classification.LOSS,
})

# Inclusive lower bound of days past due for each bucket, most severe first
CLASSIFICATION_THRESHOLDS = (
    (365, Classification.LOSS),
    (180, Classification.DOUBTFUL),
    (90, Classification.SUBSTANDARD),
    (1, Classification.SPECIAL_MENTION),
    (0, Classification.CURRENT),
)


def classify_days_past_due(days_past_due: int) -> Classification:
    """
    Map maximum days past due to a regulatory classification.

    | DPD     | Class          |
    |---------|----------------|
    | 0       | Current        |
    | 1-89    | SpecialMention |
    | 90-179  | Substandard    |
    | 180-364 | Doubtful       |
    | >=365   | Loss           |
    """
    if days_past_due < 0:
        raise ValueError(f"Days past due cannot be negative: {days_past_due}")

    for threshold, classification in CLASSIFICATION_THRESHOLDS:
        if days_past_due >= threshold:
            return classification
    return Classification.CURRENT


def days_past_due(due_date: date, today: date) -> int:
    """Whole days since due date, zero when not yet due"""
    return max(0, (today - due_date).days)


def derive_installment_status(
    total_paid: Decimal,
    total_due: Decimal,
    due_date: date,
    today: date
) -> InstallmentStatus:
    """Installment status as a pure function of payment and due date"""
    if total_paid >= total_due:
        return InstallmentStatus.PAID
    if total_paid > ZERO:
        return InstallmentStatus.PARTIALLY_PAID
    if due_date < today:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


@dataclass
class Installment(StorageRecord):
    """Single scheduled repayment owned by a schedule"""
    schedule_id: str
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    total_paid: Decimal = ZERO
    principal_balance: Decimal = ZERO   # Outstanding principal after this installment
    status: InstallmentStatus = InstallmentStatus.PENDING
    days_past_due: int = 0
    paid_date: Optional[datetime] = None

    def __post_init__(self):
        if self.total_due != self.principal_due + self.interest_due:
            raise ValueError(
                f"Installment {self.installment_number} total due {self.total_due} does not equal "
                f"principal {self.principal_due} + interest {self.interest_due}"
            )

    @property
    def outstanding(self) -> Decimal:
        """Amount still owed on this installment"""
        return self.total_due - self.total_paid

    @property
    def interest_outstanding(self) -> Decimal:
        """Interest still owed on this installment"""
        return self.interest_due - self.interest_paid

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID or self.outstanding <= ZERO


@dataclass
class RepaymentSchedule(StorageRecord):
    """Amortization schedule for one loan, owning its installments"""
    loan_id: str
    client_id: str
    product_code: str
    principal_amount: Decimal
    interest_rate: Decimal              # Nominal annual rate, e.g. 0.24 for 24%
    term_months: int
    first_payment_date: date
    maturity_date: date
    generated_at: datetime
    generated_by: str
    correlation_id: str
    repayment_frequency: str = "Monthly"
    installments: List[Installment] = field(default_factory=list)

    @property
    def unpaid_installments(self) -> List[Installment]:
        """Installments not yet settled, in installment number order"""
        return [i for i in self.installments if not i.is_paid]

    @property
    def outstanding_balance(self) -> Decimal:
        """Sum of what is still owed across all installments"""
        return sum((i.outstanding for i in self.installments), ZERO)

    def get_installment(self, installment_number: int) -> Optional[Installment]:
        for installment in self.installments:
            if installment.installment_number == installment_number:
                return installment
        return None


@dataclass
class PaymentTransaction(StorageRecord):
    """A received payment and how it was split"""
    loan_id: str
    client_id: str
    transaction_reference: str          # Globally unique idempotency key
    payment_method: str
    payment_source: str
    amount: Decimal
    transaction_date: date
    received_date: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    principal_portion: Decimal = ZERO
    interest_portion: Decimal = ZERO
    installment_number: Optional[int] = None  # Set when one installment was fully settled
    external_reference: Optional[str] = None
    notes: Optional[str] = None
    created_by: str = ""
    correlation_id: str = ""
    is_reconciled: bool = False
    reconciled_at: Optional[datetime] = None
    reconciled_by: Optional[str] = None

    @property
    def applied_amount(self) -> Decimal:
        return self.principal_portion + self.interest_portion


@dataclass
class ReconciliationTask(StorageRecord):
    """Manual follow-up for a payment that could not be fully applied"""
    payment_transaction_id: str
    task_type: ReconciliationTaskType
    status: ReconciliationTaskStatus
    description: str
    expected_amount: Decimal
    actual_amount: Decimal
    variance: Decimal
    created_by: str = "System"
    correlation_id: str = ""


@dataclass
class ArrearsClassificationRecord(StorageRecord):
    """
    Immutable ledger entry written only when a loan's classification changes
    """
    loan_id: str
    previous_classification: Classification
    new_classification: Classification
    days_past_due: int
    outstanding_balance: Decimal
    provision_rate: Decimal
    provision_amount: Decimal
    is_non_accrual: bool
    classified_at: datetime
    classified_by: str
    reason: str
    correlation_id: str
    sequence: int = 0                   # Position in the loan's ledger, from 1
