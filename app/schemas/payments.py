from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pending_id: Optional[str] = Field(None, alias="pendingId")
    company_id: Optional[int] = Field(None, alias="companyId")
    provider_link_id: Optional[str] = Field(None, alias="providerLinkId")
    payment_link_id: Optional[str] = Field(None, alias="paymentLinkId")
    reference_id: Optional[str] = Field(None, alias="referenceId")


class PaymentCheckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    approved: bool
    status: str
    order_id: Optional[str] = Field(None, alias="orderId")


class PendingPaymentRead(BaseModel):
    id: str
    company_id: int
    provider: str
    status: str
    order_id: Optional[str]
    completed_at: Optional[datetime]
    created_at: Optional[datetime]
