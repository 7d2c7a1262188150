"""Gateway passthrough: /api/payments/khalti/{initiate,lookup}"""

from fastapi import APIRouter, Depends

from api.deps import get_gateway
from schemas.payments import InitiateRequest, LookupRequest
from services.payment_gateway import KhaltiGateway

router = APIRouter(prefix="/api/payments/khalti", tags=["payments"])


@router.post("/initiate")
async def initiate_payment(payload: InitiateRequest, gateway: KhaltiGateway = Depends(get_gateway)):
    result = await gateway.initiate(payload)
    return result.model_dump(mode="json")


@router.post("/lookup")
async def lookup_payment(payload: LookupRequest, gateway: KhaltiGateway = Depends(get_gateway)):
    result = await gateway.lookup(payload.pidx)
    return result.model_dump(mode="json")
