"""
Rank management service for the compensation core.

Qualification is measured over the current calendar month:
- personal sales: paid orders where the user is distributor of record
- active legs: direct matrix children with at least one paid order
- team volume: paid order totals across the whole downline
- qualified legs: direct children holding a required rank or higher

Ranks are only ever raised by this service.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, List
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models.user import User
from models.order import Order
from models.mlm.matrix_position import MatrixPosition
from models.mlm.rank_history import RankHistory
from mlm_system.audit import AuditLogger
from mlm_system.config.ranks import RANK_CONFIG, Rank, rank_level, ranks_descending, next_rank
from mlm_system.errors import PersistenceError
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.utils.money import ZERO, to_decimal
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


@dataclass
class RankStats:
    personalSales: Decimal = ZERO
    activeLegs: int = 0
    teamVolume: Decimal = ZERO
    # Direct children at or above each rank
    qualifiedLegCounts: Dict[Rank, int] = field(default_factory=dict)


@dataclass
class RankQualification:
    rank: Rank
    qualified: bool
    currentStats: RankStats
    requirements: Dict
    missing: Dict


@dataclass
class RankAdvancement:
    advanced: bool
    oldRank: str
    newRank: str
    bonus: Decimal
    bonusCommissionId: Optional[int] = None


class RankService:
    """Service for measuring qualification and advancing ranks."""

    def __init__(self, session: Session, matrixService=None, commissionService=None,
                 audit: Optional[AuditLogger] = None):
        self.session = session
        self.audit = audit or AuditLogger()

        if commissionService is None:
            from mlm_system.services.commission_service import CommissionService
            commissionService = CommissionService(session, matrixService, audit=self.audit)
        self.commissionService = commissionService
        self.matrixService = matrixService or commissionService.matrixService

    # ═══════════════════════════════════════════════════════════════════════
    # STATS
    # ═══════════════════════════════════════════════════════════════════════

    def _paidOrdersInMonth(self):
        start, end = timeMachine.monthWindow()
        return (
            Order.paymentStatus == "paid",
            Order.createdAt >= start,
            Order.createdAt < end,
        )

    async def getPersonalSales(self, userId: int) -> Decimal:
        total = self.session.query(func.sum(Order.total)).filter(
            Order.distributorID == userId,
            *self._paidOrdersInMonth()
        ).scalar()
        return to_decimal(total)

    async def getTeamVolume(self, userId: int) -> Decimal:
        downline = await self.matrixService.getDownlinePositions(userId)
        downlineIds = [p.userID for p in downline]
        if not downlineIds:
            return ZERO

        total = self.session.query(func.sum(Order.total)).filter(
            Order.distributorID.in_(downlineIds),
            *self._paidOrdersInMonth()
        ).scalar()
        return to_decimal(total)

    async def getActiveLegs(self, userId: int, children: List[MatrixPosition] = None) -> int:
        if children is None:
            children = await self.matrixService.getDirectChildren(userId)
        childIds = [c.userID for c in children]
        if not childIds:
            return 0

        return self.session.query(func.count(func.distinct(Order.distributorID))).filter(
            Order.distributorID.in_(childIds),
            *self._paidOrdersInMonth()
        ).scalar() or 0

    async def getQualifiedLegCounts(self, userId: int, children: List[MatrixPosition] = None) -> Dict[Rank, int]:
        if children is None:
            children = await self.matrixService.getDirectChildren(userId)
        childIds = [c.userID for c in children]

        childLevels = []
        if childIds:
            childLevels = [
                rank_level(row.rank)
                for row in self.session.query(User.rank).filter(User.userID.in_(childIds)).all()
            ]

        return {
            rank: sum(1 for level in childLevels if level >= config["level"])
            for rank, config in RANK_CONFIG().items()
        }

    async def collectStats(self, userId: int) -> RankStats:
        children = await self.matrixService.getDirectChildren(userId)
        return RankStats(
            personalSales=await self.getPersonalSales(userId),
            activeLegs=await self.getActiveLegs(userId, children),
            teamVolume=await self.getTeamVolume(userId),
            qualifiedLegCounts=await self.getQualifiedLegCounts(userId, children),
        )

    # ═══════════════════════════════════════════════════════════════════════
    # QUALIFICATION
    # ═══════════════════════════════════════════════════════════════════════

    def _evaluate(self, rank: Rank, stats: RankStats) -> RankQualification:
        requirements = RANK_CONFIG()[rank]
        missing = {
            "personalSales": max(requirements["personalSales"] - stats.personalSales, ZERO),
            "activeLegs": max(requirements["activeLegs"] - stats.activeLegs, 0),
            "teamVolume": max(requirements["teamVolume"] - stats.teamVolume, ZERO),
            "qualifiedLegs": {},
        }

        for requiredRank, requiredCount in requirements["qualifiedLegs"].items():
            currentCount = stats.qualifiedLegCounts.get(requiredRank, 0)
            if currentCount < requiredCount:
                missing["qualifiedLegs"][requiredRank.value] = requiredCount - currentCount

        qualified = (
            not missing["personalSales"]
            and not missing["activeLegs"]
            and not missing["teamVolume"]
            and not missing["qualifiedLegs"]
        )

        return RankQualification(
            rank=rank,
            qualified=qualified,
            currentStats=stats,
            requirements={
                "personalSales": requirements["personalSales"],
                "activeLegs": requirements["activeLegs"],
                "teamVolume": requirements["teamVolume"],
                "qualifiedLegs": {r.value: c for r, c in requirements["qualifiedLegs"].items()},
            },
            missing=missing,
        )

    async def checkRankQualification(self, userId: int, rankId: str) -> Optional[RankQualification]:
        """Measure the user against one rank, including what is still missing."""
        try:
            rank = Rank(rankId)
        except ValueError:
            logger.error(f"Invalid rank '{rankId}'")
            return None

        stats = await self.collectStats(userId)
        return self._evaluate(rank, stats)

    async def getHighestQualifiedRank(self, userId: int, stats: RankStats = None) -> Rank:
        """Ranks are tried from highest to lowest; the first one fully met wins."""
        stats = stats or await self.collectStats(userId)

        for rank in ranks_descending():
            if self._evaluate(rank, stats).qualified:
                return rank

        return Rank.DISTRIBUTOR

    # ═══════════════════════════════════════════════════════════════════════
    # ADVANCEMENT
    # ═══════════════════════════════════════════════════════════════════════

    async def processRankAdvancement(self, userId: int) -> Optional[RankAdvancement]:
        """
        Raise the user's rank if they now qualify for a higher one.
        Returns None when there is no change or the user does not exist.
        """
        user = self.session.query(User).filter_by(userID=userId).first()
        if not user:
            return None

        oldRank = user.rank or Rank.DISTRIBUTOR.value
        stats = await self.collectStats(userId)
        qualifiedRank = await self.getHighestQualifiedRank(userId, stats)

        if RANK_CONFIG()[qualifiedRank]["level"] <= rank_level(oldRank):
            return None

        try:
            user.rank = qualifiedRank.value
            user.rankQualifiedAt = timeMachine.now

            bonusCommission = await self.commissionService.createRankBonus(
                userId, qualifiedRank.value, commit=False
            )

            self.session.add(RankHistory(
                userID=userId,
                previousRank=oldRank,
                newRank=qualifiedRank.value,
                personalSales=stats.personalSales,
                teamVolume=stats.teamVolume,
                activeLegs=stats.activeLegs,
                qualificationMethod="natural",
                bonusCommissionID=bonusCommission.commissionID if bonusCommission else None,
            ))
            self.session.commit()

        except Exception as e:
            self.session.rollback()
            logger.error(f"Failed to advance user {userId} to {qualifiedRank.value}: {e}", exc_info=True)
            raise PersistenceError(str(e))

        bonus = bonusCommission.amount if bonusCommission else ZERO
        logger.info(f"User {userId} advanced {oldRank} -> {qualifiedRank.value}, bonus {bonus}")

        self.audit.rankAdvanced(userId, oldRank, qualifiedRank.value, bonus)
        await eventBus.emit(MLMEvents.RANK_ACHIEVED, {
            "userId": userId,
            "oldRank": oldRank,
            "newRank": qualifiedRank.value,
            "bonus": bonus,
        })

        return RankAdvancement(
            advanced=True,
            oldRank=oldRank,
            newRank=qualifiedRank.value,
            bonus=bonus,
            bonusCommissionId=bonusCommission.commissionID if bonusCommission else None,
        )

    async def checkAllRanks(self) -> Dict:
        """
        Advancement run for every active distributor.
        Deepest matrix levels go first so a leg's new rank counts for its parent
        in the same run.
        """
        users = self.session.query(User.userID).filter(User.status == "active").all()
        levels = dict(self.session.query(MatrixPosition.userID, MatrixPosition.level).all())

        userIds = sorted((row.userID for row in users), key=lambda uid: -levels.get(uid, 0))

        summary = {"checked": 0, "advanced": [], "errors": 0}
        for userId in userIds:
            try:
                advancement = await self.processRankAdvancement(userId)
                summary["checked"] += 1
                if advancement:
                    summary["advanced"].append(advancement)
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Rank check failed for user {userId}: {e}", exc_info=True)

        logger.info(
            f"Rank check complete: {summary['checked']} checked, "
            f"{len(summary['advanced'])} advanced, {summary['errors']} errors"
        )
        return summary

    async def getRankStats(self, userId: int) -> Optional[Dict]:
        """Current rank with its qualification, plus the next rank and what it needs."""
        user = self.session.query(User).filter_by(userID=userId).first()
        if not user:
            return None

        try:
            currentRank = Rank(user.rank or Rank.DISTRIBUTOR.value)
        except ValueError:
            logger.warning(f"User {userId} has unknown rank '{user.rank}'")
            currentRank = Rank.DISTRIBUTOR

        stats = await self.collectStats(userId)
        upcoming = next_rank(currentRank)
        config = RANK_CONFIG()

        return {
            "currentRank": {
                "id": currentRank.value,
                "name": config[currentRank]["displayName"],
                "level": config[currentRank]["level"],
            },
            "currentQualification": self._evaluate(currentRank, stats),
            "nextRank": {
                "id": upcoming.value,
                "name": config[upcoming]["displayName"],
                "level": config[upcoming]["level"],
                "bonus": config[upcoming]["bonus"],
            } if upcoming else None,
            "nextQualification": self._evaluate(upcoming, stats) if upcoming else None,
        }
