import uuid

import sqlalchemy as sa
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from app.core.database import Base

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
CANCELLED = "cancelled"


class PendingPayment(Base):
    __tablename__ = "pending_payments"
    __table_args__ = (
        CheckConstraint(
            "(status = 'completed' AND order_id IS NOT NULL) OR (status != 'completed' AND order_id IS NULL)",
            name="ck_pending_payments_order_matches_status",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(Integer, ForeignKey("companies.id"), index=True, nullable=False)
    provider = Column(String(30), nullable=False)  # mercadopago / picpay

    # pending -> processing -> completed | pending -> cancelled
    status = Column(String(20), index=True, nullable=False, default=PENDING)

    provider_payment_ref = Column(String(120), index=True, nullable=True)
    provider_preference_ref = Column(String(120), index=True, nullable=True)

    # Snapshot do checkout; nunca alterado depois de criado
    order_data = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False)

    order_id = Column(String(36), ForeignKey("orders.id"), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    claim_attempts = Column(Integer, nullable=False, default=0)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
