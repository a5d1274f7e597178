from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.orm import relationship

from app.core.database import Base


class Company(Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True)
    name = Column(String(160), nullable=False, default="Loja Padrão")
    owner_user_id = Column(Integer, nullable=True, index=True)
    owner_email = Column(String(255), nullable=True)

    # Estado da assinatura: free / active / grace_period
    subscription_status = Column(String(20), nullable=False, default="free")
    subscription_plan = Column(String(64), nullable=True)
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)
    subscription_grace_end_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    payment_settings = relationship("CompanyPaymentSettings", back_populates="company", uselist=False)
