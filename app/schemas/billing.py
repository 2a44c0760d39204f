from typing import Optional

from app.schemas.subscription import CamelModel


class CheckoutSessionResponse(CamelModel):
    checkout_url: str
    session_id: str


class PortalSessionRequest(CamelModel):
    return_url: Optional[str] = None


class PortalSessionResponse(CamelModel):
    url: str
