from sqlalchemy import String, Integer, DateTime, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base

class Refund(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    confirmation_code: Mapped[str] = mapped_column(String(20), index=True)
    payment_id: Mapped[str] = mapped_column(String(36), index=True)

    operator: Mapped[str] = mapped_column(String(320))
    reason: Mapped[str] = mapped_column(String(500))

    amount: Mapped[int] = mapped_column(Integer)
    full_refund: Mapped[bool] = mapped_column(Boolean, default=False)
    tickets_cancelled: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[str] = mapped_column(String(20), default="requested")  # requested, succeeded, failed
    response_code: Mapped[str] = mapped_column(String(4), default="")
    gateway_message: Mapped[str] = mapped_column(String(500), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
