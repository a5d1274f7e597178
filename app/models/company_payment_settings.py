from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship

from app.core.database import Base


class CompanyPaymentSettings(Base):
    __tablename__ = "company_payment_settings"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, ForeignKey("companies.id"), unique=True, index=True, nullable=False)

    mercadopago_enabled = Column(Boolean, nullable=False, default=False)
    mercadopago_verified = Column(Boolean, nullable=False, default=False)
    mercadopago_access_token = Column(String, nullable=True)

    picpay_enabled = Column(Boolean, nullable=False, default=False)
    picpay_client_id = Column(String, nullable=True)
    picpay_client_secret = Column(String, nullable=True)
    picpay_token = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    company = relationship("Company", back_populates="payment_settings")
