# mlm_system/events/handlers.py
"""
Event handlers for the compensation core.
Translate inbound application events into engine calls.
"""
import logging
from typing import Dict, Any

from core.db import get_session
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.services.factory import create_services

logger = logging.getLogger(__name__)


async def handle_order_completed(data: Dict[str, Any]):
    """
    Handle ORDER_COMPLETED event.

    1. Commission fan-out for the order
    2. Rank check for the selling distributor

    Args:
        data: Event data with 'orderId' and optional 'distributorId', 'customerId'
    """
    order_id = data.get("orderId")

    if not order_id:
        logger.error("ORDER_COMPLETED event missing orderId")
        return

    logger.info(f"Processing compensation for order {order_id}")

    session = get_session()

    try:
        services = create_services(session)

        # ═══════════════════════════════════════════════════════════
        # STEP 1: Commissions (all-or-nothing)
        # ═══════════════════════════════════════════════════════════
        result = await services.commissions.processOrderCommissions(
            order_id,
            data.get("distributorId"),
            data.get("customerId")
        )

        if not result.success:
            logger.error(
                f"Commissions for order {order_id} not created: "
                f"{result.error.code} ({result.error.message})"
            )
            return

        logger.info(
            f"✓ {result.commissionsCreated} commissions, total {result.totalAmount} "
            f"for order {order_id}"
        )

        # ═══════════════════════════════════════════════════════════
        # STEP 2: Rank check for the seller
        # ═══════════════════════════════════════════════════════════
        distributor_id = data.get("distributorId") or result.commissions[0].userID
        try:
            advancement = await services.ranks.processRankAdvancement(distributor_id)
            if advancement:
                logger.info(f"✓ User {distributor_id} advanced to {advancement.newRank}")
        except Exception as e:
            logger.error(
                f"Error checking rank for user {distributor_id} after order {order_id}: {e}",
                exc_info=True
            )

    except Exception as e:
        logger.error(f"Error processing order {order_id}: {e}", exc_info=True)
        session.rollback()
    finally:
        session.close()


async def handle_distributor_enrolled(data: Dict[str, Any]):
    """
    Handle DISTRIBUTOR_ENROLLED event: place the new distributor in the matrix.

    Args:
        data: Event data with 'userId', 'sponsorId' and optional 'placedBy'
    """
    user_id = data.get("userId")
    sponsor_id = data.get("sponsorId")

    if not user_id or not sponsor_id:
        logger.error("DISTRIBUTOR_ENROLLED event missing userId or sponsorId")
        return

    session = get_session()

    try:
        services = create_services(session)
        result = await services.matrix.placeInMatrix(user_id, sponsor_id, data.get("placedBy"))

        if not result.success:
            logger.warning(
                f"User {user_id} not placed under {sponsor_id}: {result.error.code} "
                f"({result.error.userMessage})"
            )
            return

        position = result.position
        await eventBus.emit(MLMEvents.MATRIX_PLACED, {
            "userId": position.userID,
            "sponsorId": position.sponsorID,
            "parentId": position.parentID,
            "level": position.level,
            "legPosition": position.legPosition,
        })

    except Exception as e:
        logger.error(f"Error placing user {user_id}: {e}", exc_info=True)
        session.rollback()
    finally:
        session.close()
