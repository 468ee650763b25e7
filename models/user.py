# backoffice/models/user.py
"""
User model - distributor identity as seen by the compensation core.
Profile, auth and storefront data live in the surrounding application.
"""
from sqlalchemy import Column, Integer, String, DateTime
from models.base import Base, AuditMixin


class User(Base, AuditMixin):
    __tablename__ = 'users'

    # Primary identification
    userID = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=True, index=True)
    firstname = Column(String, nullable=True)
    surname = Column(String, nullable=True)

    # Account status: active, inactive, suspended
    status = Column(String(20), default="active", nullable=False, index=True)

    # Rank (id from rank configuration, never demoted automatically)
    rank = Column(String(30), default="distributor", nullable=False, index=True)
    rankQualifiedAt = Column(DateTime, nullable=True)

    @property
    def isActive(self) -> bool:
        return self.status == "active"

    @property
    def displayName(self) -> str:
        name = " ".join(part for part in (self.firstname, self.surname) if part)
        return name or f"user {self.userID}"

    def __repr__(self):
        return f"<User(userID={self.userID}, status={self.status}, rank={self.rank})>"
