"""
Integration tests for the loan servicing engine

Runs a loan from schedule generation through payments, nightly
classification and reconciliation against in-memory and SQLite storage.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.audit import AuditAction
from loan_servicing.batch import BatchState
from loan_servicing.clock import FixedClock
from loan_servicing.config import ServicingConfig
from loan_servicing.engine import LoanServicingEngine
from loan_servicing.errors import ScheduleNotFoundError
from loan_servicing.models import Classification, InstallmentStatus, PaymentStatus
from loan_servicing.notifications import NotificationKind, StoredNotificationSink


def _engine(database_url="memory://", **settings):
    config = ServicingConfig(_env_file=None, database_url=database_url, **settings)
    clock = FixedClock(date(2024, 12, 1))
    return LoanServicingEngine.from_config(config, clock=clock), clock


class TestLoanLifecycle:
    """End-to-end servicing of a single loan"""

    def setup_method(self):
        self.engine, self.clock = _engine()
        self.engine.generate_schedule(
            "LOAN001", "CLIENT001", "PERSONAL", Decimal('12000.00'), Decimal('0.24'), 12,
            date(2025, 1, 1), actor="loan-officer"
        )

    def teardown_method(self):
        self.engine.close()

    def test_from_config_wiring(self):
        assert isinstance(self.engine.notifications, StoredNotificationSink)
        assert self.engine.audit is not None
        assert self.engine.batch.max_workers == 4
        assert self.engine.batch.timeout == 300.0
        assert self.engine.payments.overpayment_tolerance == Decimal('0.01')

    def test_missed_payments_then_catch_up(self):
        self.clock.set(date(2025, 1, 20))
        self.engine.apply_payment(
            "LOAN001", "CLIENT001", "PAY-001", "MobileMoney", "Airtel", Decimal('1134.72'), date(2025, 1, 20)
        )

        # No further payments until the second installment is 95 days late
        self.clock.set(date(2025, 5, 7))
        result = self.engine.run_nightly_classification()

        assert result.state == BatchState.COMPLETED
        assert result.reclassified_count == 1
        assert self.engine.get_current_classification("LOAN001") == Classification.SUBSTANDARD
        assert self.engine.get_days_past_due("LOAN001") == 95

        schedule = self.engine.get_schedule_by_loan("LOAN001")
        assert schedule.installments[0].status == InstallmentStatus.PAID
        assert schedule.installments[1].status == InstallmentStatus.OVERDUE

        overdue = sum(i.outstanding for i in schedule.installments if i.days_past_due > 0)
        self.engine.apply_payment(
            "LOAN001", "CLIENT001", "PAY-002", "BankTransfer", "Zanaco", overdue, date(2025, 5, 7)
        )
        assert self.engine.classify_all_loans() == 1
        assert self.engine.get_current_classification("LOAN001") == Classification.CURRENT

        history = self.engine.get_classification_history("LOAN001")
        assert [r.new_classification for r in history] == [Classification.CURRENT, Classification.SUBSTANDARD]

        stored = self.engine.notifications.get_notifications("LOAN001")
        assert [n["kind"] for n in stored] == [
            NotificationKind.PAYMENT_CONFIRMATION.value,
            NotificationKind.CLASSIFICATION_CHANGED.value,
            NotificationKind.PAYMENT_CONFIRMATION.value,
        ]

        integrity = self.engine.audit.verify_integrity()
        assert integrity["valid"]
        actions = [e.action for e in self.engine.audit.get_all_events()]
        assert actions == [
            AuditAction.SCHEDULE_GENERATED,
            AuditAction.PAYMENT_PROCESSED,
            AuditAction.LOAN_RECLASSIFIED,
            AuditAction.PAYMENT_PROCESSED,
            AuditAction.LOAN_RECLASSIFIED,
        ]

    def test_reconciliation_flow(self):
        self.clock.set(date(2025, 1, 2))
        payment = self.engine.apply_payment(
            "LOAN001", "CLIENT001", "PAY-001", "Cash", "Branch", Decimal('1134.72'), date(2025, 1, 2)
        )
        assert [t.id for t in self.engine.get_unreconciled_payments()] == [payment.transaction_id]

        self.engine.reconcile_payment(payment.transaction_id, "finance-ops", "Matched to bank statement")

        assert self.engine.get_unreconciled_payments() == []
        assert self.engine.get_transaction(payment.transaction_id).status == PaymentStatus.RECONCILED
        assert len(self.engine.get_payment_history("LOAN001")) == 1

    def test_overpayment_settles_loan(self):
        outstanding = self.engine.get_schedule_by_loan("LOAN001").outstanding_balance

        result = self.engine.apply_payment(
            "LOAN001", "CLIENT001", "PAY-FULL", "BankTransfer", "Zanaco",
            outstanding + Decimal('250.00'), date(2024, 12, 1)
        )

        assert result.unapplied_amount == Decimal('250.00')
        tasks = self.engine.get_reconciliation_tasks()
        assert [t.variance for t in tasks] == [Decimal('250.00')]

        self.clock.set(date(2026, 6, 1))
        outcome = self.engine.classify_loan("LOAN001")
        assert outcome.new == Classification.CURRENT
        assert not outcome.changed

    def test_arrears_summary(self):
        self.engine.generate_schedule(
            "LOAN002", "CLIENT002", "SME", Decimal('50000.00'), Decimal('0.30'), 24, date(2025, 6, 1)
        )
        self.clock.set(date(2025, 7, 1))
        self.engine.run_nightly_classification()

        summary = self.engine.get_arrears_summary()

        assert summary[Classification.DOUBTFUL] == 1
        assert summary[Classification.SPECIAL_MENTION] == 1
        assert sum(summary.values()) == 2

    def test_operations_on_unknown_loan(self):
        with pytest.raises(ScheduleNotFoundError):
            self.engine.apply_payment(
                "LOAN404", "CLIENT404", "PAY-X", "Cash", "Branch", Decimal('10.00'), date(2024, 12, 1)
            )
        with pytest.raises(ScheduleNotFoundError):
            self.engine.classify_loan("LOAN404")
        assert self.engine.get_schedule_by_loan("LOAN404") is None


class TestEngineConfiguration:
    """Engine behaviour under different settings"""

    def test_background_side_effects(self):
        engine, clock = _engine(background_side_effects=True)
        try:
            engine.generate_schedule(
                "LOAN001", "CLIENT001", "PERSONAL", Decimal('1000.00'), Decimal('0.12'), 6, date(2025, 1, 1)
            )
            engine.apply_payment(
                "LOAN001", "CLIENT001", "PAY-001", "Cash", "Branch", Decimal('100.00'), date(2024, 12, 1)
            )

            assert engine.flush_side_effects(timeout=5)
            assert engine.audit.count_events() == 2
            assert len(engine.notifications.get_notifications("LOAN001")) == 1
        finally:
            engine.close()

    def test_audit_disabled(self):
        engine, clock = _engine(enable_audit_logging=False)
        try:
            assert engine.audit is None
            engine.generate_schedule(
                "LOAN001", "CLIENT001", "PERSONAL", Decimal('1000.00'), Decimal('0.12'), 6, date(2025, 1, 1)
            )
            assert engine.get_schedule_by_loan("LOAN001") is not None
        finally:
            engine.close()

    def test_sqlite_storage_survives_restart(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'servicing.db'}"
        engine, clock = _engine(url)
        engine.generate_schedule(
            "LOAN001", "CLIENT001", "PERSONAL", Decimal('12000.00'), Decimal('0.24'), 12, date(2025, 1, 1)
        )
        clock.set(date(2025, 4, 6))
        engine.apply_payment(
            "LOAN001", "CLIENT001", "PAY-001", "Cash", "Branch", Decimal('300.00'), date(2025, 4, 6)
        )
        engine.classify_loan("LOAN001")
        engine.close()

        reopened, _ = _engine(url)
        try:
            schedule = reopened.get_schedule_by_loan("LOAN001")
            first = schedule.installments[0]
            assert first.total_paid == Decimal('300.00')
            assert first.interest_paid == Decimal('240.00')
            assert first.status == InstallmentStatus.PARTIALLY_PAID
            assert first.days_past_due == 95
            assert reopened.get_current_classification("LOAN001") == Classification.SUBSTANDARD
            assert reopened.audit.verify_integrity()["valid"]
            assert reopened.audit.count_events() == 3
        finally:
            reopened.close()


if __name__ == "__main__":
    pytest.main([__file__])
