"""Notification sink: approval requests, responses, budget alerts and escalations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import httpx


class NotificationKind(str, Enum):
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESPONDED = "approval_responded"
    BUDGET_ALERT = "budget_alert"
    ESCALATION = "escalation"


class NotificationSink(Protocol):
    def notify(self, recipient_id: str, kind: str, payload: Dict[str, Any]) -> None:
        ...


def _kind_value(kind) -> str:
    return kind.value if isinstance(kind, NotificationKind) else str(kind)


class NotificationService:
    """
    Logs every notification and posts it to a Slack incoming webhook when
    SLACK_WEBHOOK_URL is configured. Delivery is fire-and-forget.
    """

    def __init__(self, slack_webhook_url: Optional[str] = None, timeout: float = 8.0) -> None:
        self.logger = logging.getLogger("spendflow.notifications")
        self.slack_webhook_url = slack_webhook_url or ""
        self.timeout = timeout

    def notify(self, recipient_id: str, kind: str, payload: Dict[str, Any]) -> None:
        kind_value = _kind_value(kind)
        self.logger.info("Notification %s -> %s: %s", kind_value, recipient_id, payload)
        self._send_slack_blocks(self.build_slack_message(recipient_id, kind_value, payload))

    def build_slack_message(self, recipient_id: str, kind: str, payload: Dict[str, Any]) -> Dict:
        request_id = payload.get("request_id", "")
        if kind == NotificationKind.APPROVAL_REQUESTED.value:
            text = f"<@{recipient_id}> approval requested for {request_id} ({payload.get('amount', 0):,.2f})"
        elif kind == NotificationKind.APPROVAL_RESPONDED.value:
            text = f"Request {request_id} was {payload.get('decision', 'decided')} by {payload.get('actor', 'an approver')}"
        elif kind == NotificationKind.BUDGET_ALERT.value:
            ratio = payload.get("utilization_ratio") or 0
            text = (
                f"Budget {payload.get('level', 'warning')}: {payload.get('budget_line_id', '')} "
                f"{payload.get('period', '')} at {ratio:.0%} of plan"
            )
        elif kind == NotificationKind.ESCALATION.value:
            text = (
                f"<@{recipient_id}> request {request_id} is overdue at stage "
                f"{payload.get('stage_index', 0)} ({payload.get('role', '')})"
            )
        else:
            text = f"{kind} for {recipient_id}"
        return {
            "text": text,
            "blocks": [
                {"type": "section", "text": {"type": "mrkdwn", "text": text}},
            ],
        }

    def _send_slack_blocks(self, payload: Dict) -> None:
        """Send slack message if configured."""
        if not payload or not self.slack_webhook_url:
            return
        try:
            httpx.post(self.slack_webhook_url, json=payload, timeout=self.timeout)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("Slack notification failed: %s", exc)


@dataclass
class SentNotification:
    recipient_id: str
    kind: str
    payload: Dict[str, Any]


class RecordingNotificationSink:
    """Keeps notifications in memory. Used by tests and the local demo."""

    def __init__(self) -> None:
        self.sent: List[SentNotification] = []

    def notify(self, recipient_id: str, kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append(SentNotification(recipient_id, _kind_value(kind), dict(payload)))

    def of_kind(self, kind) -> List[SentNotification]:
        kind_value = _kind_value(kind)
        return [n for n in self.sent if n.kind == kind_value]

    def clear(self) -> None:
        self.sent.clear()
