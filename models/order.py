from datetime import datetime
from sqlalchemy import String, DateTime, Integer, Numeric, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_number: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    # Written only through services.transitions.apply_transition
    status: Mapped[str] = mapped_column(String(30), default="PENDING_ADMIN_DECISION", index=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_amount: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    delivery_address: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    items = relationship(
        "OrderItem",
        cascade="all, delete-orphan",
        back_populates="order",
        order_by="OrderItem.id",
        lazy="selectin",
    )
