# mlm_system/audit.py
"""
Audit trail for money-moving and structural operations.

Events are handed to a sink; the default sink writes one JSON line per event
to the "audit" logger. Recording is best-effort: a failing sink is logged and
never interrupts the operation that produced the event.
"""
import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")

SYSTEM_ACTOR = "system"


@dataclass
class AuditEvent:
    actor: str
    action: str
    entity: str
    entityId: Any
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    severity: str = "info"  # info, warning, critical
    category: str = "compensation"  # compensation, matrix, payout, rank
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: timeMachine.now)

    def toDict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        if self.amount is not None:
            data["amount"] = str(self.amount)
        return data


class LoggingAuditSink:
    """Writes events as JSON to the audit logger."""

    def write(self, event: AuditEvent):
        level = logging.WARNING if event.severity in ("warning", "critical") else logging.INFO
        audit_logger.log(level, json.dumps(event.toDict(), default=str))


class MemoryAuditSink:
    """Keeps events in a list; used by tests and the operator script."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def write(self, event: AuditEvent):
        self.events.append(event)

    def actions(self) -> List[str]:
        return [event.action for event in self.events]


class AuditLogger:
    """Best-effort front for an audit sink."""

    def __init__(self, sink=None):
        self.sink = sink or LoggingAuditSink()

    def record(self, event: AuditEvent) -> bool:
        try:
            self.sink.write(event)
            return True
        except Exception as e:
            logger.error(
                f"Failed to write audit event {event.action} "
                f"for {event.entity} {event.entityId}: {e}",
                exc_info=True
            )
            return False

    def _actor(self, actorId) -> str:
        return str(actorId) if actorId is not None else SYSTEM_ACTOR

    def matrixPlaced(self, position, actorId=None) -> bool:
        return self.record(AuditEvent(
            actor=self._actor(actorId),
            action="matrix.placed",
            entity="matrix_position",
            entityId=position.userID,
            category="matrix",
            metadata={
                "sponsorId": position.sponsorID,
                "parentId": position.parentID,
                "level": position.level,
                "legPosition": position.legPosition,
            },
        ))

    def commissionsCreated(self, orderId, count: int, total: Decimal) -> bool:
        return self.record(AuditEvent(
            actor=SYSTEM_ACTOR,
            action="commission.created",
            entity="order",
            entityId=orderId,
            amount=total,
            metadata={"count": count},
        ))

    def commissionStatusChanged(self, commission, previous: str, actorId=None,
                                reason: Optional[str] = None) -> bool:
        return self.record(AuditEvent(
            actor=self._actor(actorId),
            action=f"commission.{commission.status}",
            entity="commission",
            entityId=commission.commissionID,
            amount=commission.amount,
            reason=reason,
            metadata={"previousStatus": previous},
        ))

    def rankAdvanced(self, userId, oldRank: str, newRank: str, bonus: Decimal) -> bool:
        return self.record(AuditEvent(
            actor=SYSTEM_ACTOR,
            action="rank.advanced",
            entity="user",
            entityId=userId,
            amount=bonus,
            category="rank",
            metadata={"oldRank": oldRank, "newRank": newRank},
        ))

    def payoutRetryScheduled(self, payment, reason: str, actorId=None) -> bool:
        return self.record(AuditEvent(
            actor=self._actor(actorId),
            action="payout.retry_scheduled",
            entity="payment",
            entityId=payment.paymentID,
            amount=payment.amount,
            reason=reason,
            severity="warning",
            category="payout",
            metadata={
                "retryCount": payment.retryCount,
                "nextRetryAt": payment.nextRetryAt.isoformat() if payment.nextRetryAt else None,
            },
        ))

    def payoutManualReview(self, payment, reason: str, actorId=None) -> bool:
        return self.record(AuditEvent(
            actor=self._actor(actorId),
            action="payout.manual_review",
            entity="payment",
            entityId=payment.paymentID,
            amount=payment.amount,
            reason=reason,
            severity="critical",
            category="payout",
            metadata={"retryCount": payment.retryCount},
        ))

    def payoutChanged(self, payment, action: str, actorId=None,
                      reason: Optional[str] = None) -> bool:
        return self.record(AuditEvent(
            actor=self._actor(actorId),
            action=f"payout.{action}",
            entity="payment",
            entityId=payment.paymentID,
            amount=payment.amount,
            reason=reason,
            category="payout",
        ))
