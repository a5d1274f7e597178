from sqlalchemy import Column, DateTime, Integer, String, Text, func

from app.core.database import Base


class IntegrationEvent(Base):
    __tablename__ = "integration_events"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, index=True, nullable=True)
    integration = Column(String(40), nullable=False)
    event_type = Column(String(80), nullable=False)
    status = Column(String(20), nullable=False, default="ok")
    pending_payment_id = Column(String(36), index=True, nullable=True)
    payload_json = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True, nullable=False)
