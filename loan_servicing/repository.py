"""
Servicing Repository

Maps servicing records to storage dictionaries and back, and groups the
writes of each financial operation into one atomic commit.
"""

from decimal import Decimal
from datetime import datetime, date
from typing import Dict, List, Optional, Any

from .storage import StorageInterface
from .models import (
    RepaymentSchedule, Installment, InstallmentStatus,
    PaymentTransaction, PaymentStatus,
    ReconciliationTask, ReconciliationTaskType, ReconciliationTaskStatus,
    ArrearsClassificationRecord, Classification
)


def _get_date(data: Dict[str, Any], key: str) -> Optional[date]:
    if data.get(key):
        return date.fromisoformat(data[key])
    return None


def _get_datetime(data: Dict[str, Any], key: str) -> Optional[datetime]:
    if data.get(key):
        return datetime.fromisoformat(data[key])
    return None


class ServicingRepository:
    """Persistence adapter for schedules, payments and classifications"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.schedules_table = "repayment_schedules"
        self.installments_table = "installments"
        self.transactions_table = "payment_transactions"
        self.reconciliation_table = "reconciliation_tasks"
        self.classification_table = "arrears_classification_history"

    # Schedules

    def get_schedule_by_loan(self, loan_id: str) -> Optional[RepaymentSchedule]:
        """Load the schedule for a loan with installments ordered by number"""
        schedules_data = self.storage.find(self.schedules_table, {"loan_id": loan_id})
        if not schedules_data:
            return None

        schedule = self._schedule_from_dict(schedules_data[0])
        schedule.installments = self.get_installments(schedule.id)
        return schedule

    def schedule_exists(self, loan_id: str) -> Optional[str]:
        """Id of the loan's schedule, if one exists"""
        schedules_data = self.storage.find(self.schedules_table, {"loan_id": loan_id})
        if schedules_data:
            return schedules_data[0]['id']
        return None

    def get_installments(self, schedule_id: str) -> List[Installment]:
        installments_data = self.storage.find(self.installments_table, {"schedule_id": schedule_id})
        installments = [self._installment_from_dict(data) for data in installments_data]
        installments.sort(key=lambda x: x.installment_number)
        return installments

    def list_loan_ids(self) -> List[str]:
        """Loan ids of every schedule on the book, in generation order"""
        schedules_data = self.storage.load_all(self.schedules_table)
        schedules_data.sort(key=lambda x: x.get('generated_at', ''))
        return [data['loan_id'] for data in schedules_data]

    def save_schedule(self, schedule: RepaymentSchedule) -> None:
        """Persist a schedule and all of its installments atomically"""
        with self.storage.atomic():
            self.storage.save(self.schedules_table, schedule.id, self._schedule_to_dict(schedule))
            for installment in schedule.installments:
                self._save_installment(installment)

    def _save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, self._installment_to_dict(installment))

    # Payments

    def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def get_transaction_by_reference(self, transaction_reference: str) -> Optional[PaymentTransaction]:
        transactions_data = self.storage.find(
            self.transactions_table,
            {"transaction_reference": transaction_reference}
        )
        if transactions_data:
            return self._transaction_from_dict(transactions_data[0])
        return None

    def get_transactions_for_loan(self, loan_id: str) -> List[PaymentTransaction]:
        transactions_data = self.storage.find(self.transactions_table, {"loan_id": loan_id})
        return [self._transaction_from_dict(data) for data in transactions_data]

    def get_unreconciled_transactions(self) -> List[PaymentTransaction]:
        transactions_data = self.storage.find(self.transactions_table, {"is_reconciled": False})
        return [self._transaction_from_dict(data) for data in transactions_data]

    def commit_payment(
        self,
        transaction: PaymentTransaction,
        installments: List[Installment],
        reconciliation_task: Optional[ReconciliationTask] = None
    ) -> None:
        """Persist a payment, the installments it funded and any reconciliation task"""
        with self.storage.atomic():
            for installment in installments:
                self._save_installment(installment)
            if reconciliation_task:
                self.storage.save(
                    self.reconciliation_table,
                    reconciliation_task.id,
                    self._task_to_dict(reconciliation_task)
                )
            self.storage.save(self.transactions_table, transaction.id, self._transaction_to_dict(transaction))

    def save_transaction(self, transaction: PaymentTransaction) -> None:
        self.storage.save(self.transactions_table, transaction.id, self._transaction_to_dict(transaction))

    def get_reconciliation_tasks(
        self,
        status: Optional[ReconciliationTaskStatus] = None
    ) -> List[ReconciliationTask]:
        filters = {"status": status.value} if status else {}
        tasks_data = self.storage.find(self.reconciliation_table, filters)
        tasks = [self._task_from_dict(data) for data in tasks_data]
        tasks.sort(key=lambda x: x.created_at)
        return tasks

    def get_reconciliation_tasks_for_transaction(self, transaction_id: str) -> List[ReconciliationTask]:
        tasks_data = self.storage.find(
            self.reconciliation_table,
            {"payment_transaction_id": transaction_id}
        )
        return [self._task_from_dict(data) for data in tasks_data]

    # Classification ledger

    def get_classification_history(self, loan_id: str) -> List[ArrearsClassificationRecord]:
        """Classification changes for a loan, most recent first"""
        history_data = self.storage.find(self.classification_table, {"loan_id": loan_id})
        history = [self._classification_from_dict(data) for data in history_data]
        history.sort(key=lambda x: (x.sequence, x.classified_at), reverse=True)
        return history

    def get_latest_classification(self, loan_id: str) -> Optional[ArrearsClassificationRecord]:
        history = self.get_classification_history(loan_id)
        return history[0] if history else None

    def get_all_classification_history(self) -> List[ArrearsClassificationRecord]:
        history_data = self.storage.load_all(self.classification_table)
        return [self._classification_from_dict(data) for data in history_data]

    def commit_classification(
        self,
        installments: List[Installment],
        record: Optional[ArrearsClassificationRecord] = None
    ) -> None:
        """Persist refreshed installments and, on change, the new ledger entry"""
        with self.storage.atomic():
            for installment in installments:
                self._save_installment(installment)
            if record:
                self.storage.save(self.classification_table, record.id, self._classification_to_dict(record))

    # Serialization methods

    def _schedule_to_dict(self, schedule: RepaymentSchedule) -> Dict:
        return schedule.to_dict(exclude=('installments',))

    def _schedule_from_dict(self, data: Dict) -> RepaymentSchedule:
        return RepaymentSchedule(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            client_id=data['client_id'],
            product_code=data['product_code'],
            principal_amount=Decimal(data['principal_amount']),
            interest_rate=Decimal(data['interest_rate']),
            term_months=data['term_months'],
            first_payment_date=date.fromisoformat(data['first_payment_date']),
            maturity_date=date.fromisoformat(data['maturity_date']),
            generated_at=datetime.fromisoformat(data['generated_at']),
            generated_by=data['generated_by'],
            correlation_id=data['correlation_id'],
            repayment_frequency=data.get('repayment_frequency', "Monthly")
        )

    def _installment_to_dict(self, installment: Installment) -> Dict:
        return installment.to_dict()

    def _installment_from_dict(self, data: Dict) -> Installment:
        return Installment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            schedule_id=data['schedule_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_due=Decimal(data['principal_due']),
            interest_due=Decimal(data['interest_due']),
            total_due=Decimal(data['total_due']),
            principal_paid=Decimal(data['principal_paid']),
            interest_paid=Decimal(data['interest_paid']),
            total_paid=Decimal(data['total_paid']),
            principal_balance=Decimal(data['principal_balance']),
            status=InstallmentStatus(data['status']),
            days_past_due=data.get('days_past_due', 0),
            paid_date=_get_datetime(data, 'paid_date')
        )

    def _transaction_to_dict(self, transaction: PaymentTransaction) -> Dict:
        return transaction.to_dict()

    def _transaction_from_dict(self, data: Dict) -> PaymentTransaction:
        return PaymentTransaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            client_id=data['client_id'],
            transaction_reference=data['transaction_reference'],
            payment_method=data['payment_method'],
            payment_source=data['payment_source'],
            amount=Decimal(data['amount']),
            transaction_date=date.fromisoformat(data['transaction_date']),
            received_date=datetime.fromisoformat(data['received_date']),
            status=PaymentStatus(data['status']),
            principal_portion=Decimal(data['principal_portion']),
            interest_portion=Decimal(data['interest_portion']),
            installment_number=data.get('installment_number'),
            external_reference=data.get('external_reference'),
            notes=data.get('notes'),
            created_by=data.get('created_by', ""),
            correlation_id=data.get('correlation_id', ""),
            is_reconciled=data.get('is_reconciled', False),
            reconciled_at=_get_datetime(data, 'reconciled_at'),
            reconciled_by=data.get('reconciled_by')
        )

    def _task_to_dict(self, task: ReconciliationTask) -> Dict:
        return task.to_dict()

    def _task_from_dict(self, data: Dict) -> ReconciliationTask:
        return ReconciliationTask(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_transaction_id=data['payment_transaction_id'],
            task_type=ReconciliationTaskType(data['task_type']),
            status=ReconciliationTaskStatus(data['status']),
            description=data['description'],
            expected_amount=Decimal(data['expected_amount']),
            actual_amount=Decimal(data['actual_amount']),
            variance=Decimal(data['variance']),
            created_by=data.get('created_by', "System"),
            correlation_id=data.get('correlation_id', "")
        )

    def _classification_to_dict(self, record: ArrearsClassificationRecord) -> Dict:
        return record.to_dict()

    def _classification_from_dict(self, data: Dict) -> ArrearsClassificationRecord:
        return ArrearsClassificationRecord(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            previous_classification=Classification(data['previous_classification']),
            new_classification=Classification(data['new_classification']),
            days_past_due=data['days_past_due'],
            outstanding_balance=Decimal(data['outstanding_balance']),
            provision_rate=Decimal(data['provision_rate']),
            provision_amount=Decimal(data['provision_amount']),
            is_non_accrual=data['is_non_accrual'],
            classified_at=datetime.fromisoformat(data['classified_at']),
            classified_by=data['classified_by'],
            reason=data['reason'],
            correlation_id=data['correlation_id'],
            sequence=data.get('sequence', 0)
        )
