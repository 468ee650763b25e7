# backoffice/models/order.py
"""
Order and OrderItem models - the slice of checkout data the compensation
core reads (commissionable value, distributor of record, payment status).
"""
from sqlalchemy import Column, Integer, String, DECIMAL, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Order(Base, AuditMixin):
    __tablename__ = 'orders'

    # Primary key
    orderID = Column(Integer, primary_key=True, autoincrement=True)

    # Distributor of record (earns retail, drives matrix) and buyer
    distributorID = Column(Integer, ForeignKey('users.userID'), nullable=False, index=True)
    customerID = Column(Integer, nullable=True)

    total = Column(DECIMAL(12, 2), nullable=False, default=0)
    paymentStatus = Column(String(20), default="pending", index=True)  # pending, paid, refunded

    # Relationships
    distributor = relationship('User', backref='orders')
    items = relationship('OrderItem', back_populates='order', order_by='OrderItem.itemID')

    def __repr__(self):
        return f"<Order(orderID={self.orderID}, distributor={self.distributorID}, total={self.total})>"


class OrderItem(Base):
    __tablename__ = 'order_items'

    itemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('orders.orderID'), nullable=False, index=True)

    productName = Column(String, nullable=True)
    quantity = Column(Integer, default=1)
    price = Column(DECIMAL(12, 2), nullable=False, default=0)

    # Line total the plan pays on (may differ from price)
    commissionableValue = Column(DECIMAL(12, 2), nullable=True)

    order = relationship('Order', back_populates='items')

    def __repr__(self):
        return f"<OrderItem(itemID={self.itemID}, order={self.orderID}, cv={self.commissionableValue})>"
