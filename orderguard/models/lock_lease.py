"""
Order lock leases - database fallback for the per-order lock when Redis is unavailable.
A row is held while its holder keeps renewing expires_at.
"""
from datetime import datetime, timezone
from sqlalchemy import BigInteger, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from orderguard.database import Base


class OrderLockLease(Base):
    __tablename__ = "order_lock_leases"

    lock_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    lock_key: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
