from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TeamMemberIn(_Body):
    # presence is checked by the orchestrator so errors carry member indexes
    name: Optional[str] = None
    email: Optional[str] = None


class TeamIn(_Body):
    name: Optional[str] = None
    members: List[TeamMemberIn] = Field(default_factory=list)


class RegistrationCreate(_Body):
    event_id: str = Field(alias="eventId", min_length=1)
    type: Literal["individual", "team"]
    team: Optional[TeamIn] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    event_name: Optional[str] = Field(default=None, alias="eventName")


class CheckoutAck(_Body):
    order_id: Optional[str] = Field(default=None, alias="orderId")
    payment_id: Optional[str] = Field(default=None, alias="paymentId")
    signature: Optional[str] = None
    notes: Optional[str] = None


class PaymentVerify(_Body):
    gateway_order_id: str = Field(alias="gatewayOrderId", min_length=1)
    gateway_payment_id: str = Field(alias="gatewayPaymentId", min_length=1)
    signature: str = Field(min_length=1)


class EntryFeeOrder(_Body):
    emails: List[str] = Field(default_factory=list)


class MockEmit(_Body):
    t: Literal["succeeded", "failed"]
