# mlm_system/services/commission_service.py
"""
Commission calculation service - retail, matrix, matching and rank bonuses.

All commissions for an order are computed first and written in a single
transaction: either the whole fan-out is persisted or none of it is.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Dict, Optional, Iterable
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models.user import User
from models.order import Order
from models.commission import Commission
from mlm_system.audit import AuditLogger
from mlm_system.config.plan import COMPENSATION_PLAN
from mlm_system.config.ranks import RANK_CONFIG, Rank
from mlm_system.errors import (
    MLMError,
    OrderNotFoundError,
    NoCommissionableItemsError,
    CommissionsAlreadyProcessedError,
    CommissionNotFoundError,
    InvalidStatusTransition,
    PersistenceError,
)
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.utils.money import ZERO, to_decimal, round_money
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

MATCHED_TYPES = ("retail", "matrix")

# Allowed commission status changes; rejected and paid are terminal
COMMISSION_TRANSITIONS = {
    "pending": {"approved", "rejected"},
    "approved": {"paid", "rejected"},
    "paid": set(),
    "rejected": set(),
}


@dataclass
class CommissionRunResult:
    success: bool
    orderId: int
    commissionsCreated: int = 0
    totalAmount: Decimal = ZERO
    commissions: List[Commission] = field(default_factory=list)
    error: Optional[MLMError] = None


class CommissionService:
    """Service for calculating and administering commissions."""

    def __init__(self, session: Session, matrixService=None, plan=None,
                 audit: Optional[AuditLogger] = None):
        self.session = session
        self.plan = plan or COMPENSATION_PLAN()
        self.audit = audit or AuditLogger()

        if matrixService is None:
            from mlm_system.services.matrix_service import MatrixService
            from mlm_system.stores.sql import SqlMatrixStore
            matrixService = MatrixService(SqlMatrixStore(session), self.plan, self.audit)
        self.matrixService = matrixService

    # ═══════════════════════════════════════════════════════════════════════
    # ORDER COMMISSIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def processOrderCommissions(
            self,
            orderId: int,
            distributorId: Optional[int] = None,
            customerId: Optional[int] = None
    ) -> CommissionRunResult:
        """
        Calculate and persist every commission for a completed order.

        1. Retail to the selling distributor
        2. Matrix to the distributor's upline, one rate per level
        3. Matching to each retail/matrix earner's upline

        Inactive upline members are skipped and their share is forfeited.
        """
        try:
            order = self.session.query(Order).filter_by(orderID=orderId).first()
            if not order:
                logger.error(f"Order {orderId} not found")
                return CommissionRunResult(success=False, orderId=orderId, error=OrderNotFoundError())

            distributorId = distributorId or order.distributorID
            fromUserId = customerId or distributorId

            items = list(order.items)
            if not items:
                logger.warning(f"Order {orderId} has no items, no commissions created")
                return CommissionRunResult(
                    success=False, orderId=orderId, error=NoCommissionableItemsError()
                )

            alreadyProcessed = self.session.query(Commission.commissionID).filter(
                Commission.orderID == orderId
            ).first()
            if alreadyProcessed:
                logger.warning(f"Order {orderId} already has commissions, skipping")
                return CommissionRunResult(
                    success=False, orderId=orderId, error=CommissionsAlreadyProcessedError()
                )
        except Exception as e:
            self.session.rollback()
            logger.error(f"Error loading order {orderId}: {e}", exc_info=True)
            return CommissionRunResult(success=False, orderId=orderId, error=PersistenceError(str(e)))

        try:
            totalCommissionable = sum(
                (to_decimal(item.commissionableValue) for item in items), ZERO
            )

            calculations = [self._calculateRetail(orderId, distributorId, fromUserId, totalCommissionable)]
            calculations.extend(
                await self._calculateMatrix(orderId, distributorId, fromUserId, totalCommissionable)
            )

            matching = []
            for calc in calculations:
                matching.extend(await self._calculateMatching(calc))
            calculations.extend(matching)

        except Exception as e:
            logger.error(f"Error calculating commissions for order {orderId}: {e}", exc_info=True)
            return CommissionRunResult(success=False, orderId=orderId, error=PersistenceError(str(e)))

        rows = [self._buildRow(calc) for calc in calculations]

        try:
            self.session.add_all(rows)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error(f"Failed to save commissions for order {orderId}: {e}", exc_info=True)
            return CommissionRunResult(success=False, orderId=orderId, error=PersistenceError(str(e)))

        totalAmount = sum((row.amount for row in rows), ZERO)

        logger.info(
            f"Processed order {orderId}: {len(rows)} commissions, total {totalAmount} "
            f"on commissionable value {totalCommissionable}"
        )

        self.audit.commissionsCreated(orderId, len(rows), totalAmount)
        await eventBus.emit(MLMEvents.COMMISSION_CALCULATED, {
            "orderId": orderId,
            "distributorId": distributorId,
            "commissionIds": [row.commissionID for row in rows],
            "totalAmount": totalAmount,
        })

        return CommissionRunResult(
            success=True,
            orderId=orderId,
            commissionsCreated=len(rows),
            totalAmount=totalAmount,
            commissions=rows,
        )

    def _calculateRetail(self, orderId, distributorId, fromUserId, totalCommissionable) -> Dict:
        return {
            "userId": distributorId,
            "fromUserId": fromUserId,
            "orderId": orderId,
            "type": "retail",
            "level": None,
            "amount": totalCommissionable * self.plan.retailRate,
            "percentage": self.plan.retailPercentage,
            "description": f"Retail commission ({self.plan.retailPercentage}%) on order total",
        }

    async def _calculateMatrix(self, orderId, distributorId, fromUserId, totalCommissionable) -> List[Dict]:
        upline = await self.matrixService.getUplinePositions(
            distributorId, self.plan.matrixLevelCount
        )
        activeIds = self._activeUserIds(p.userID for p in upline)

        commissions = []
        for level, position in enumerate(upline, start=1):
            if position.userID not in activeIds:
                logger.debug(
                    f"Skipping inactive upline {position.userID} at matrix level {level} "
                    f"for order {orderId}"
                )
                continue

            percentage = self.plan.matrixPercentages[level - 1]
            commissions.append({
                "userId": position.userID,
                "fromUserId": fromUserId,
                "orderId": orderId,
                "type": "matrix",
                "level": level,
                "amount": totalCommissionable * self.plan.matrixRate(level),
                "percentage": percentage,
                "description": f"Matrix Level {level} commission ({percentage}%)",
            })

        return commissions

    async def _calculateMatching(self, matched: Dict) -> List[Dict]:
        """10% of an unrounded retail/matrix amount to each active upline within reach."""
        if matched["type"] not in MATCHED_TYPES or self.plan.matchingLevels == 0:
            return []

        upline = await self.matrixService.getUplinePositions(
            matched["userId"], self.plan.matchingLevels
        )
        activeIds = self._activeUserIds(p.userID for p in upline)

        bonuses = []
        for level, position in enumerate(upline, start=1):
            if position.userID not in activeIds:
                continue

            bonuses.append({
                "userId": position.userID,
                "fromUserId": matched["userId"],
                "orderId": matched["orderId"],
                "type": "matching",
                "level": level,
                "amount": matched["amount"] * self.plan.matchingRate,
                "percentage": self.plan.matchingPercentage,
                "description": f"Matching Bonus Level {level} ({self.plan.matchingPercentage}%)",
            })

        return bonuses

    def _activeUserIds(self, userIds: Iterable[int]) -> set:
        userIds = list(userIds)
        if not userIds:
            return set()

        rows = self.session.query(User.userID).filter(
            User.userID.in_(userIds),
            User.status == "active"
        ).all()
        return {row.userID for row in rows}

    def _buildRow(self, calc: Dict) -> Commission:
        return Commission(
            userID=calc["userId"],
            fromUserID=calc["fromUserId"],
            orderID=calc["orderId"],
            type=calc["type"],
            level=calc["level"],
            amount=round_money(calc["amount"]),
            percentage=calc["percentage"],
            description=calc["description"],
            status="pending",
        )

    # ═══════════════════════════════════════════════════════════════════════
    # RANK BONUS
    # ═══════════════════════════════════════════════════════════════════════

    async def createRankBonus(self, userId: int, rankId: str, commit: bool = True) -> Optional[Commission]:
        """
        One-time flat bonus for reaching a rank. No order reference, not matched.
        Returns None when the rank carries no bonus.
        """
        try:
            rankConfig = RANK_CONFIG()[Rank(rankId)]
        except ValueError:
            logger.error(f"Unknown rank '{rankId}' for rank bonus of user {userId}")
            return None

        amount = rankConfig["bonus"]
        if amount <= 0:
            return None

        commission = Commission(
            userID=userId,
            fromUserID=userId,
            orderID=None,
            type="rank_bonus",
            level=None,
            amount=round_money(amount),
            description=f"{rankConfig['displayName']} Rank Achievement Bonus",
            status="pending",
        )
        self.session.add(commission)

        if commit:
            self.session.commit()
        else:
            self.session.flush()

        logger.info(f"Rank bonus {commission.amount} created for user {userId} ({rankId})")
        return commission

    # ═══════════════════════════════════════════════════════════════════════
    # APPROVAL WORKFLOW
    # ═══════════════════════════════════════════════════════════════════════

    async def approveCommission(self, commissionId: int, adminId: int) -> Commission:
        return self._transition(commissionId, "approved", adminId)

    async def rejectCommission(self, commissionId: int, adminId: int, reason: str = None) -> Commission:
        return self._transition(commissionId, "rejected", adminId, reason)

    async def markCommissionPaid(self, commissionId: int, paymentId: Optional[int] = None,
                                 actorId: Optional[int] = None) -> Commission:
        commission = self._transition(commissionId, "paid", actorId, commit=False)
        commission.paidAt = timeMachine.now
        if paymentId is not None:
            commission.paymentID = paymentId
        self.session.commit()
        return commission

    def _transition(self, commissionId: int, newStatus: str, actorId=None,
                    reason: Optional[str] = None, commit: bool = True) -> Commission:
        commission = self.session.query(Commission).filter_by(commissionID=commissionId).first()
        if not commission:
            raise CommissionNotFoundError(f"Commission {commissionId} not found")

        previous = commission.status
        if newStatus not in COMMISSION_TRANSITIONS.get(previous, set()):
            raise InvalidStatusTransition("Commission", previous, newStatus)

        commission.status = newStatus
        if commit:
            self.session.commit()

        logger.info(f"Commission {commissionId}: {previous} -> {newStatus} (actor {actorId})")
        self.audit.commissionStatusChanged(commission, previous, actorId, reason)
        return commission

    # ═══════════════════════════════════════════════════════════════════════
    # REPORTING
    # ═══════════════════════════════════════════════════════════════════════

    async def getOrderCommissions(self, orderId: int) -> List[Commission]:
        return self.session.query(Commission).filter(
            Commission.orderID == orderId
        ).order_by(Commission.commissionID).all()

    async def getUserCommissionSummary(self, userId: int) -> Dict:
        """Totals for a distributor by status and by type."""
        summary = {
            "total": ZERO,
            "pending": ZERO,
            "approved": ZERO,
            "paid": ZERO,
            "rejected": ZERO,
            "byType": {"retail": ZERO, "matrix": ZERO, "rank_bonus": ZERO, "matching": ZERO},
        }

        rows = self.session.query(
            Commission.status,
            Commission.type,
            func.sum(Commission.amount).label("amount")
        ).filter(
            Commission.userID == userId
        ).group_by(Commission.status, Commission.type).all()

        for row in rows:
            amount = round_money(row.amount)
            if row.status != "rejected":
                summary["total"] += amount
                summary["byType"][row.type] = summary["byType"].get(row.type, ZERO) + amount
            summary[row.status] = summary.get(row.status, ZERO) + amount

        return summary
