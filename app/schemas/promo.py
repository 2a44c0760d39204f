from datetime import datetime
from typing import Any, Optional

from app.schemas.subscription import CamelModel


class RedeemPromoRequest(CamelModel):
    # Untyped so a missing or non-string code gets the "Please enter a promo
    # code" message rather than a framework validation error.
    code: Any = None


class RedeemPromoResponse(CamelModel):
    success: bool
    message: str
    expires_at: Optional[datetime] = None
