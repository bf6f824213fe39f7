"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
and audit event logging. Critical for regulatory compliance.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

from loan_servicing.audit import AuditTrail, AuditEvent, AuditAction, LogAuditSink
from loan_servicing.storage import InMemoryStorage


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def _event(self, **overrides):
        now = datetime(2025, 1, 15, tzinfo=timezone.utc)
        params = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            sequence=1,
            timestamp=now,
            actor="teller-1",
            action=AuditAction.PAYMENT_PROCESSED,
            entity_type="PaymentTransaction",
            entity_id="TXN001",
            correlation_id="corr-001",
            previous_hash="",
            current_hash="",
            data={"amount": Decimal('1134.72'), "value_date": now}
        )
        params.update(overrides)
        return AuditEvent(**params)

    def test_data_serialized(self):
        """Decimals and datetimes are stored as strings"""
        event = self._event()
        assert event.data["amount"] == "1134.72"
        assert event.data["value_date"] == "2025-01-15T00:00:00+00:00"

    def test_hash_verification(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.current_hash = "tampered_hash"
        assert not event.verify_hash()

    def test_hash_includes_fields(self):
        base = self._event().calculate_hash()

        assert self._event(actor="someone-else").calculate_hash() != base
        assert self._event(sequence=2).calculate_hash() != base
        assert self._event(previous_hash="abc").calculate_hash() != base
        assert self._event(data={"amount": "1134.73"}).calculate_hash() != base
        assert self._event().calculate_hash() == base

    def test_round_trip_through_dict(self):
        event = self._event()
        event.current_hash = event.calculate_hash()

        restored = AuditEvent.from_dict(event.to_dict())

        assert restored.timestamp == event.timestamp
        assert restored.verify_hash()


class TestAuditTrail:
    """Test hash-chained audit trail"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.now = datetime(2025, 1, 15, tzinfo=timezone.utc)

    def _log(self, entity_id="TXN001", action=AuditAction.PAYMENT_PROCESSED, **data):
        return self.audit_trail.log_event(
            timestamp=self.now,
            actor="System",
            action=action,
            entity_type="PaymentTransaction",
            entity_id=entity_id,
            correlation_id="corr-001",
            data=data
        )

    def test_log_first_event(self):
        event = self._log(amount=Decimal('10.00'))

        assert event.sequence == 1
        assert event.previous_hash == ""
        assert event.verify_hash()
        assert self.audit_trail.get_latest_hash() == event.current_hash
        assert self.audit_trail.count_events() == 1

    def test_log_multiple_events_chain(self):
        first = self._log("TXN001")
        second = self._log("TXN002")
        third = self._log("TXN003")

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash
        assert [e.sequence for e in self.audit_trail.get_all_events()] == [1, 2, 3]

    def test_chain_continues_after_reload(self):
        first = self._log("TXN001")

        reloaded = AuditTrail(self.storage)
        second = reloaded.log_event(
            self.now, "System", AuditAction.PAYMENT_RECONCILED, "PaymentTransaction", "TXN001", None
        )

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert reloaded.verify_integrity()["valid"]

    def test_get_events_for_entity(self):
        self._log("TXN001")
        self._log("TXN002")
        self._log("TXN001", action=AuditAction.PAYMENT_RECONCILED)

        events = self.audit_trail.get_events_for_entity("PaymentTransaction", "TXN001")
        assert [e.action for e in events] == [AuditAction.PAYMENT_PROCESSED, AuditAction.PAYMENT_RECONCILED]

        latest = self.audit_trail.get_events_for_entity("PaymentTransaction", "TXN001", limit=1)
        assert [e.action for e in latest] == [AuditAction.PAYMENT_RECONCILED]

    def test_get_events_by_action(self):
        self._log("TXN001")
        self._log("LOAN001", action=AuditAction.LOAN_RECLASSIFIED)

        events = self.audit_trail.get_events_by_action(AuditAction.LOAN_RECLASSIFIED)
        assert [e.entity_id for e in events] == ["LOAN001"]

    def test_verify_integrity_valid_chain(self):
        for n in range(5):
            self._log(f"TXN{n}")

        result = self.audit_trail.verify_integrity()

        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampered_data_detected(self):
        self._log("TXN001", amount=Decimal('100.00'))
        target = self._log("TXN002", amount=Decimal('200.00'))
        self._log("TXN003", amount=Decimal('300.00'))

        stored = self.storage.load(self.audit_trail.table_name, target.id)
        stored["data"]["amount"] = "2.00"
        self.storage.save(self.audit_trail.table_name, target.id, stored)

        result = self.audit_trail.verify_integrity()

        assert not result["valid"]
        assert [e["event_id"] for e in result["hash_errors"]] == [target.id]
        assert result["chain_breaks"] == []

    def test_deleted_event_breaks_chain(self):
        self._log("TXN001")
        middle = self._log("TXN002")
        last = self._log("TXN003")

        self.storage.delete(self.audit_trail.table_name, middle.id)

        result = self.audit_trail.verify_integrity()

        assert not result["valid"]
        assert [b["event_id"] for b in result["chain_breaks"]] == [last.id]

    def test_empty_trail_is_valid(self):
        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 0


class TestLogAuditSink:
    """Test the log-only audit sink"""

    def test_log_event_writes_record(self):
        sink = LogAuditSink()
        sink.logger = Mock()

        sink.log_event(
            datetime(2025, 1, 15, tzinfo=timezone.utc), "System",
            AuditAction.LOAN_RECLASSIFIED, "ArrearsClassification", "HIST001", "corr-001",
            {"days_past_due": 95}
        )

        args, kwargs = sink.logger.log.call_args
        assert args[1] == "LoanReclassified ArrearsClassification HIST001"
        assert kwargs["extra"]["correlation_id"] == "corr-001"
        assert kwargs["extra"]["extra"] == {"days_past_due": 95}


if __name__ == "__main__":
    pytest.main([__file__])
