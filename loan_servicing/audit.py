"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Schedule generation, payment processing, reconciliation and every loan
reclassification are logged here.
"""

import hashlib
import json
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, serialize_value


class AuditAction:
    """Action names recorded by the servicing engine"""
    SCHEDULE_GENERATED = "RepaymentScheduleGenerated"
    PAYMENT_PROCESSED = "PaymentProcessed"
    PAYMENT_RECONCILED = "PaymentReconciled"
    LOAN_RECLASSIFIED = "LoanReclassified"


class AuditSink(ABC):
    """Receiver of audit events emitted after financial writes commit"""

    @abstractmethod
    def log_event(
        self,
        timestamp: datetime,
        actor: str,
        action: str,
        entity_type: str,
        entity_id: str,
        correlation_id: Optional[str],
        data: Optional[Dict[str, Any]] = None
    ) -> Any:
        pass


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int           # Position in the chain, from 1
    timestamp: datetime     # Business time of the audited action
    actor: str
    action: str
    entity_type: str
    entity_id: str
    correlation_id: Optional[str]
    previous_hash: str      # Hash of previous audit event for chaining
    current_hash: str       # SHA-256 hash of this event
    data: Dict[str, Any]

    def __post_init__(self):
        self.data = {k: serialize_value(v) for k, v in (self.data or {}).items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'timestamp': self.timestamp.isoformat(),
            'actor': self.actor,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'correlation_id': self.correlation_id,
            'previous_hash': self.previous_hash,
            'data': self.data
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'timestamp'):
            if isinstance(data[key], str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class AuditTrail(AuditSink):
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._sequence = latest.get('sequence', 0)

    def log_event(
        self,
        timestamp: datetime,
        actor: str,
        action: str,
        entity_type: str,
        entity_id: str,
        correlation_id: Optional[str],
        data: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            timestamp: When the audited action happened
            actor: User or system component that performed it
            action: Action name, see AuditAction
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            correlation_id: Correlation ID of the originating request
            data: Additional event-specific data

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=self._sequence + 1,
                timestamp=timestamp,
                actor=actor,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                correlation_id=correlation_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                data=data or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())

            # Only advance the chain once the event is stored
            self._last_hash = event.current_hash
            self._sequence = event.sequence

            return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of (most recent) events to return
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)

        if limit:
            events = events[-limit:]

        return events

    def get_events_by_action(self, action: str) -> List[AuditEvent]:
        events_data = self.storage.find(self.table_name, {'action': action})
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda x: x.sequence)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })

            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        return self._last_hash


class LogAuditSink(AuditSink):
    """Audit sink that writes events to the structured log only"""

    def __init__(self, logger_name: str = "loan_servicing.audit"):
        self.logger = get_logger(logger_name)

    def log_event(
        self,
        timestamp: datetime,
        actor: str,
        action: str,
        entity_type: str,
        entity_id: str,
        correlation_id: Optional[str],
        data: Optional[Dict[str, Any]] = None
    ) -> None:
        log_action(
            self.logger, "info", f"{action} {entity_type} {entity_id}",
            actor=actor, action=action, correlation_id=correlation_id,
            extra={k: serialize_value(v) for k, v in (data or {}).items()}
        )
