"""Authentication endpoints."""

from fastapi import APIRouter, Depends

from square_bff.core.auth import TokenData, get_current_merchant

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me")
async def get_current_user(
    merchant: TokenData = Depends(get_current_merchant),
) -> dict[str, str]:
    """Return the merchant the session token was issued to."""
    return {"merchant_id": merchant.merchant_id, "token_expires": str(merchant.exp)}
