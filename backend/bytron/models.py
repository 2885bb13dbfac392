from sqlalchemy import Boolean, Column, DateTime, Float, BigInteger, Integer, String

from .database import Base
from .utils import now_utc


class OrderRecord(Base):
    __tablename__ = "orders"

    order_id = Column(String, primary_key=True, index=True)
    product_id = Column(String, index=True)
    required_amount = Column(BigInteger, nullable=False)
    rate_usd = Column(Float, nullable=False)
    deposit_address = Column(String, unique=True, nullable=False)
    deposit_secret = Column(String, nullable=True)
    state = Column(String, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=now_utc)
    paid_amount = Column(BigInteger, nullable=True)
    paid_tx = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    forwarded = Column(Boolean, default=False)
    forward_tx = Column(String, nullable=True)
    forward_attempts = Column(Integer, default=0)
    notification_email = Column(String, nullable=True)
