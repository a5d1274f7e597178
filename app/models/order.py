import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import relationship

from app.core.database import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(Integer, ForeignKey("companies.id"), index=True, nullable=False)

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    customer_name = Column(String(120), nullable=False, default="Cliente")
    customer_phone = Column(String(30), nullable=False, default="")
    customer_email = Column(String(255), nullable=True)
    delivery_address_id = Column(String(64), nullable=True)
    table_session_id = Column(String(64), nullable=True)
    source = Column(String(20), nullable=False, default="online")  # online / table

    payment_method = Column(String(30), nullable=False, default="pix")
    payment_status = Column(String(20), nullable=False, default="paid")
    provider_payment_ref = Column(String(160), index=True, nullable=True)

    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    notes = Column(Text, nullable=True)

    # Kanban da cozinha (consumido pelo KDS)
    status = Column(String(30), nullable=False, default="pending")
    estimated_delivery_time = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    customer = relationship("Customer", back_populates="orders")
    coupon = relationship("Coupon", back_populates="orders")
    order_items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
