from sqlalchemy import String, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base

class Payment(Base):
    """One gateway payment attempt (one createPayment call)."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    confirmation_code: Mapped[str] = mapped_column(String(20), index=True)
    txn_ref: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    provider: Mapped[str] = mapped_column(String(40), default="vnpay")
    amount: Mapped[int] = mapped_column(Integer)  # VND requested at create time
    ticket_ids_json: Mapped[str] = mapped_column(Text, default="[]")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, paid, failed, refunded
    response_code: Mapped[str] = mapped_column(String(4), default="")
    transaction_no: Mapped[str] = mapped_column(String(64), default="", index=True)
    bank_code: Mapped[str] = mapped_column(String(20), default="")
    create_date: Mapped[str] = mapped_column(String(14))  # yyyyMMddHHmmss, gateway timezone
    pay_date: Mapped[str] = mapped_column(String(14), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    settled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
