from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from openledger.database import Base


class ConsentGate(Base):
    __tablename__ = "consent_gates"

    id: Mapped[int] = mapped_column(primary_key=True)
    gate: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class ConsentReceipt(Base):
    __tablename__ = "consent_receipts"

    id: Mapped[int] = mapped_column(primary_key=True)
    receipt_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    gate: Mapped[str] = mapped_column(String(100), index=True)
    choice: Mapped[bool] = mapped_column(Boolean)
    commit: Mapped[str] = mapped_column(String(64))
    # ISO-8601 string, signed verbatim
    timestamp: Mapped[str] = mapped_column(String(40), index=True)
    evidence_hash: Mapped[str] = mapped_column(String(64))
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    signature: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
