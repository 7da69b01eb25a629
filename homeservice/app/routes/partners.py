"""Partner payout account endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..billing import ConnectAccountService
from ..schemas.billing import ConnectStatusRequest, ConnectStatusResponse
from ..services.billing import get_connect_account_service

router = APIRouter(prefix="/api/partners", tags=["partners"])


@router.post(
    "/stripe-connect/check-status",
    response_model=ConnectStatusResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
def check_connect_status(
    payload: ConnectStatusRequest,
    service: ConnectAccountService = Depends(get_connect_account_service),
) -> ConnectStatusResponse:
    return ConnectStatusResponse.from_status(service.check_status(payload.partner_id))
