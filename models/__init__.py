"""
Database models for the compensation back office.
Import all models here so metadata is complete and access is easy.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Core models
from models.user import User
from models.order import Order, OrderItem
from models.commission import Commission
from models.payment import Payment, PaymentBatch

# MLM models
from models.mlm.matrix_position import MatrixPosition
from models.mlm.rank_history import RankHistory

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Core
    'User',
    'Order',
    'OrderItem',
    'Commission',
    'Payment',
    'PaymentBatch',

    # MLM
    'MatrixPosition',
    'RankHistory',
]
