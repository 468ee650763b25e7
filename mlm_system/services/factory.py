# mlm_system/services/factory.py
"""
Wires the compensation services around one request-scoped session.
"""
from dataclasses import dataclass
from typing import Optional
from sqlalchemy.orm import Session

from mlm_system.audit import AuditLogger
from mlm_system.config.plan import COMPENSATION_PLAN
from mlm_system.services.matrix_service import MatrixService
from mlm_system.services.commission_service import CommissionService
from mlm_system.services.rank_service import RankService
from mlm_system.services.payout_retry_service import PayoutRetryService, RetryConfig
from mlm_system.services.payout_service import PayoutService
from mlm_system.stores.sql import SqlMatrixStore


@dataclass
class Services:
    matrix: MatrixService
    commissions: CommissionService
    ranks: RankService
    payouts: PayoutService
    retries: PayoutRetryService


def create_services(session: Session, audit: Optional[AuditLogger] = None, plan=None,
                    retryConfig: Optional[RetryConfig] = None, store=None) -> Services:
    """All services share the session, the matrix store and the audit logger."""
    audit = audit or AuditLogger()
    plan = plan or COMPENSATION_PLAN()

    matrix = MatrixService(store or SqlMatrixStore(session), plan, audit)
    commissions = CommissionService(session, matrix, plan, audit)

    return Services(
        matrix=matrix,
        commissions=commissions,
        ranks=RankService(session, matrix, commissions, audit),
        payouts=PayoutService(session, audit),
        retries=PayoutRetryService(session, retryConfig, audit),
    )
