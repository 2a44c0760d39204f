from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies.auth import get_optional_user_id
from app.schemas.promo import RedeemPromoRequest, RedeemPromoResponse
from app.services.promo_redemption import redeem_promo_code

router = APIRouter()


@router.post("/redeem", response_model=RedeemPromoResponse)
def redeem(
    body: Optional[RedeemPromoRequest] = Body(None),
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: Session = Depends(get_db),
):
    """
    Redeem a promo code for the current user.
    Every outcome, including 401, keeps the {success, message} body and
    carries its own status code.
    """
    result = redeem_promo_code(db, user_id, body.code if body else None)
    response = RedeemPromoResponse(
        success=result.success,
        message=result.message,
        expires_at=result.expires_at,
    )
    return JSONResponse(
        status_code=result.status_code,
        content=response.model_dump(mode="json", by_alias=True, exclude_none=True),
    )
