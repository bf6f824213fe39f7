"""
Notification Sinks Module

Best-effort delivery of payment confirmations and classification changes to
borrowers. Sinks raise on delivery failure; the side-effect dispatcher
catches and logs, so a failed notification never affects the financial
write that triggered it.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any

import httpx

from .errors import CollaboratorError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, serialize_value


class NotificationKind(Enum):
    """Kinds of borrower notification emitted by the servicing engine"""
    PAYMENT_CONFIRMATION = "PAYMENT_CONFIRMATION"
    CLASSIFICATION_CHANGED = "LOAN_CLASSIFICATION_CHANGED"


def _serialize_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: serialize_value(v) for k, v in (payload or {}).items()}


class NotificationSink(ABC):
    """Abstract receiver of borrower notifications"""

    @abstractmethod
    def notify(
        self,
        kind: NotificationKind,
        loan_id: str,
        client_id: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None
    ) -> None:
        """Deliver a notification; raise on failure"""
        pass


class LogNotificationSink(NotificationSink):
    """Simple logging sink for development"""

    def __init__(self, logger_name: str = "loan_servicing.notifications"):
        self.logger = get_logger(logger_name)

    def notify(
        self,
        kind: NotificationKind,
        loan_id: str,
        client_id: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None
    ) -> None:
        log_action(
            self.logger, "info", f"{kind.value} for client {client_id}",
            loan_id=loan_id, action=kind.value, correlation_id=correlation_id,
            extra=_serialize_payload(payload)
        )


class StoredNotificationSink(NotificationSink):
    """In-app notification sink using storage"""

    def __init__(self, storage: StorageInterface, table: str = "notifications"):
        self.storage = storage
        self.table = table

    def notify(
        self,
        kind: NotificationKind,
        loan_id: str,
        client_id: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        notification = {
            "id": str(uuid.uuid4()),
            "created_at": now,
            "updated_at": now,
            "kind": kind.value,
            "loan_id": loan_id,
            "client_id": client_id,
            "payload": _serialize_payload(payload),
            "correlation_id": correlation_id,
            "read": False,
        }
        self.storage.save(self.table, notification["id"], notification)

    def get_notifications(
        self,
        loan_id: Optional[str] = None,
        kind: Optional[NotificationKind] = None
    ) -> List[Dict[str, Any]]:
        """Stored notifications, oldest first"""
        filters = {}
        if loan_id:
            filters["loan_id"] = loan_id
        if kind:
            filters["kind"] = kind.value
        notifications = self.storage.find(self.table, filters)
        notifications.sort(key=lambda x: x["created_at"])
        return notifications


class WebhookNotificationSink(NotificationSink):
    """Posts notifications as JSON to a webhook endpoint"""

    def __init__(
        self,
        url: str,
        timeout: float = 2.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None
    ):
        self.url = url
        self.timeout = timeout
        self.api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def notify(
        self,
        kind: NotificationKind,
        loan_id: str,
        client_id: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        body = {
            "notification_id": str(uuid.uuid4()),
            "type": kind.value,
            "loan_id": loan_id,
            "client_id": client_id,
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": _serialize_payload(payload),
        }

        try:
            response = self._client.post(self.url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Notification webhook unreachable: {e}") from e

        if response.status_code >= 300:
            raise CollaboratorError(
                f"Notification webhook returned {response.status_code}: {response.text}"
            )

    def close(self):
        """Close the HTTP client"""
        self._client.close()
