"""
MLM System - forced matrix compensation core.
"""

# Services
from mlm_system.services.matrix_service import MatrixService, PlacementResult
from mlm_system.services.commission_service import CommissionService, CommissionRunResult
from mlm_system.services.rank_service import RankService, RankAdvancement, RankQualification
from mlm_system.services.payout_retry_service import PayoutRetryService, PayoutFailureResult, RetryConfig
from mlm_system.services.payout_service import PayoutService
from mlm_system.services.factory import Services, create_services

# Stores
from mlm_system.stores.sql import SqlMatrixStore
from mlm_system.stores.memory import InMemoryMatrixStore

# Configuration
from mlm_system.config.ranks import Rank, RANK_CONFIG
from mlm_system.config.plan import CompensationPlan, COMPENSATION_PLAN, loadCompensationPlan

# Utilities
from mlm_system.audit import AuditLogger, AuditEvent
from mlm_system.utils.time_machine import timeMachine

# Events
from mlm_system.events.event_bus import eventBus, MLMEvents

__all__ = [
    # Services
    'MatrixService',
    'PlacementResult',
    'CommissionService',
    'CommissionRunResult',
    'RankService',
    'RankAdvancement',
    'RankQualification',
    'PayoutRetryService',
    'PayoutFailureResult',
    'RetryConfig',
    'PayoutService',
    'Services',
    'create_services',

    # Stores
    'SqlMatrixStore',
    'InMemoryMatrixStore',

    # Config
    'Rank',
    'RANK_CONFIG',
    'CompensationPlan',
    'COMPENSATION_PLAN',
    'loadCompensationPlan',

    # Utils
    'AuditLogger',
    'AuditEvent',
    'timeMachine',

    # Events
    'eventBus',
    'MLMEvents',
]
