"""
Test suite for repayment schedule generation

Tests the annuity payment calculation, rounding drift absorption in the
final installment, due date arithmetic, idempotent generation and input
validation.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date
from unittest.mock import Mock

from loan_servicing.audit import AuditTrail, AuditAction
from loan_servicing.clock import FixedClock
from loan_servicing.errors import ValidationError, PersistenceError
from loan_servicing.models import InstallmentStatus
from loan_servicing.repository import ServicingRepository
from loan_servicing.schedules import (
    ScheduleGenerator, add_months, calculate_monthly_payment, build_installments
)
from loan_servicing.storage import InMemoryStorage


class TestScheduleMath:
    """Test the pure amortization helpers"""

    def test_monthly_payment_is_rounded_annuity(self):
        payment = calculate_monthly_payment(Decimal('12000.00'), Decimal('0.24'), 12)
        assert payment == Decimal('1134.72')

    def test_zero_rate_payment(self):
        assert calculate_monthly_payment(Decimal('1000.00'), Decimal('0'), 3) == Decimal('333.33')

    def test_add_months_clamps_to_month_end(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2025, 1, 31), 2) == date(2025, 3, 31)
        assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)
        assert add_months(date(2025, 1, 1), 0) == date(2025, 1, 1)

    def test_reference_schedule(self):
        """12000 at 24% over 12 months"""
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        installments = build_installments(
            "SCHED001", Decimal('12000.00'), Decimal('0.24'), 12, date(2025, 1, 1), now
        )

        assert len(installments) == 12
        assert [i.installment_number for i in installments] == list(range(1, 13))

        first, second = installments[0], installments[1]
        assert first.interest_due == Decimal('240.00')
        assert first.principal_due == Decimal('894.72')
        assert first.principal_balance == Decimal('11105.28')
        assert second.interest_due == Decimal('222.11')
        assert second.principal_due == Decimal('912.61')

        for installment in installments[:-1]:
            assert installment.total_due == Decimal('1134.72')

        assert installments[-1].principal_balance == Decimal('0.00')
        assert sum(i.principal_due for i in installments) == Decimal('12000.00')

    def test_zero_rate_schedule_absorbs_drift(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        installments = build_installments(
            "SCHED002", Decimal('1000.00'), Decimal('0'), 3, date(2025, 1, 1), now
        )

        assert [i.principal_due for i in installments] == [
            Decimal('333.33'), Decimal('333.33'), Decimal('333.34')
        ]
        assert all(i.interest_due == Decimal('0.00') for i in installments)

    @pytest.mark.parametrize("principal,rate,term", [
        ('12000.00', '0.24', 12),
        ('5000.00', '0.18', 7),
        ('100.00', '0.365', 36),
        ('999999.99', '0.05', 360),
        ('0.05', '0', 7),
        ('1.00', '0.30', 1),
    ])
    def test_principal_sums_exactly(self, principal, rate, term):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        installments = build_installments(
            "SCHED", Decimal(principal), Decimal(rate), term, date(2025, 1, 31), now
        )

        assert sum(i.principal_due for i in installments) == Decimal(principal)
        assert installments[-1].principal_balance == 0
        for installment in installments:
            assert installment.total_due == installment.principal_due + installment.interest_due
            assert installment.principal_due >= 0
            expected = InstallmentStatus.PAID if installment.total_due == 0 else InstallmentStatus.PENDING
            assert installment.status == expected

    def test_tiny_zero_rate_loan_has_settled_tail(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        installments = build_installments(
            "SCHED", Decimal('0.05'), Decimal('0'), 7, date(2025, 1, 31), now
        )

        assert [i.total_due for i in installments] == [Decimal('0.01')] * 5 + [Decimal('0.00')] * 2
        assert [i.status for i in installments[5:]] == [InstallmentStatus.PAID] * 2
        assert all(i.is_paid for i in installments[5:])


class TestScheduleGenerator:
    """Test schedule generation against storage"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.repository = ServicingRepository(self.storage)
        self.audit = AuditTrail(self.storage)
        self.clock = FixedClock(date(2024, 12, 1))
        self.generator = ScheduleGenerator(self.repository, audit=self.audit, clock=self.clock)

    def _generate(self, loan_id="LOAN001", **overrides):
        params = dict(
            loan_id=loan_id,
            client_id="CLIENT001",
            product_code="PERSONAL",
            principal=Decimal('12000.00'),
            annual_rate=Decimal('0.24'),
            term_months=12,
            first_payment_date=date(2025, 1, 1),
            actor="loan-officer",
            correlation_id="corr-001"
        )
        params.update(overrides)
        return self.generator.generate_schedule(**params)

    def test_generate_schedule(self):
        result = self._generate()

        assert result.created
        schedule = self.generator.get_schedule_by_loan("LOAN001")
        assert schedule.id == result.schedule_id
        assert schedule.client_id == "CLIENT001"
        assert schedule.product_code == "PERSONAL"
        assert schedule.repayment_frequency == "Monthly"
        assert schedule.principal_amount == Decimal('12000.00')
        assert schedule.generated_by == "loan-officer"
        assert schedule.correlation_id == "corr-001"
        assert schedule.maturity_date == date(2025, 12, 1)
        assert len(schedule.installments) == 12
        assert schedule.installments[0].due_date == date(2025, 1, 1)
        assert schedule.installments[11].due_date == date(2025, 12, 1)
        assert schedule.installments[0].total_due == Decimal('1134.72')

    def test_generation_is_idempotent(self):
        first = self._generate()
        second = self._generate(principal=Decimal('5000.00'))

        assert second.schedule_id == first.schedule_id
        assert not second.created
        assert self.storage.count(self.repository.schedules_table) == 1
        assert self.storage.count(self.repository.installments_table) == 12
        assert self.generator.get_schedule_by_loan("LOAN001").principal_amount == Decimal('12000.00')

    def test_audit_event_logged_once(self):
        result = self._generate()
        self._generate()

        events = self.audit.get_events_by_action(AuditAction.SCHEDULE_GENERATED)
        assert len(events) == 1
        assert events[0].entity_id == result.schedule_id
        assert events[0].actor == "loan-officer"
        assert events[0].data["monthly_payment"] == "1134.72"

    def test_unknown_loan_has_no_schedule(self):
        assert self.generator.get_schedule_by_loan("NOPE") is None

    @pytest.mark.parametrize("overrides", [
        {"principal": Decimal('0')},
        {"principal": Decimal('-100')},
        {"principal": Decimal('100.005')},
        {"principal": 100.0},
        {"principal": "abc"},
        {"annual_rate": Decimal('-0.01')},
        {"term_months": 0},
        {"term_months": -12},
        {"loan_id": ""},
    ])
    def test_invalid_inputs_rejected_before_write(self, overrides):
        with pytest.raises(ValidationError):
            self._generate(**overrides)

        assert self.storage.count(self.repository.schedules_table) == 0
        assert self.storage.count(self.repository.installments_table) == 0
        assert self.audit.count_events() == 0

    def test_persistence_failure_leaves_nothing_behind(self):
        """A failing installment write rolls back the whole schedule"""
        original_save = self.storage.save
        calls = {"n": 0}

        def flaky_save(table, record_id, data):
            if table == self.repository.installments_table:
                calls["n"] += 1
                if calls["n"] == 5:
                    raise PersistenceError("disk full")
            original_save(table, record_id, data)

        self.storage.save = flaky_save

        with pytest.raises(PersistenceError):
            self._generate()

        assert self.storage.count(self.repository.schedules_table) == 0
        assert self.storage.count(self.repository.installments_table) == 0
        assert self.audit.count_events() == 0

    def test_audit_failure_does_not_fail_generation(self):
        audit = Mock()
        audit.log_event.side_effect = ConnectionError("audit service down")
        generator = ScheduleGenerator(self.repository, audit=audit, clock=self.clock)

        result = generator.generate_schedule(
            "LOAN002", "CLIENT002", "PERSONAL", Decimal('1000.00'), Decimal('0.12'), 6, date(2025, 1, 1)
        )

        assert result.created
        assert generator.get_schedule_by_loan("LOAN002") is not None
        audit.log_event.assert_called_once()


if __name__ == "__main__":
    pytest.main([__file__])
