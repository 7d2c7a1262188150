"""
Payment Gateway Adapter - Khalti ePayment v2
============================================
Thin wrapper around the two gateway calls the checkout flow needs:

    initiate  POST /epayment/initiate/   start a payment session
    lookup    POST /epayment/lookup/     query a session's settlement status

No business logic lives here. Success bodies are parsed into wire models;
non-success responses become ``GatewayError`` carrying the gateway's status
code and body verbatim. The adapter holds no state beyond its HTTP client.

Failure policy:
- initiate: no retries (a retried initiate could open a second session)
- lookup: bounded timeout, retried on transport errors, timeouts and 5xx
  with exponential backoff; 4xx is returned at once
"""

import asyncio
from typing import Any, Optional

import httpx
import structlog

from config import Settings
from errors import GatewayError, GatewayUnavailableError, ValidationError
from schemas.payments import InitiateRequest, InitiateResponse, LookupResponse

logger = structlog.get_logger().bind(component="payment_gateway")


class KhaltiGateway:
    """
    Khalti ePayment client.

    Example:
        gateway = KhaltiGateway(settings)
        session = await gateway.initiate(InitiateRequest(...))
        # shopper pays at session.payment_url, comes back with ?pidx=...
        status = await gateway.lookup(session.pidx)
        if status.authorizes_order:
            ...
    """

    INITIATE_PATH = "/epayment/initiate/"
    LOOKUP_PATH = "/epayment/lookup/"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.min_amount = settings.khalti_min_amount
        self.max_retries = settings.gateway_max_retries
        self.backoff_seconds = settings.gateway_backoff_seconds
        self._client = httpx.AsyncClient(
            base_url=settings.khalti_base_url,
            timeout=settings.gateway_timeout_seconds,
            headers={
                "Authorization": f"Key {settings.khalti_secret_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def close(self):
        """Close HTTP client."""
        await self._client.aclose()

    # =========================================================================
    # INITIATE
    # =========================================================================

    def validate(self, request: InitiateRequest):
        missing = request.missing_field()
        if missing:
            raise ValidationError(f"Missing required field: {missing}", {"field": missing})
        if request.amount < self.min_amount:
            raise ValidationError(
                f"Amount should be greater than Rs. {self.min_amount // 100}, "
                f"that is {self.min_amount} paisa.",
                {"amount": request.amount, "minimumAmount": self.min_amount},
            )

    async def initiate(self, request: InitiateRequest) -> InitiateResponse:
        """Start a payment session. Never retried."""
        self.validate(request)
        payload = request.model_dump(mode="json", exclude_none=True)

        try:
            response = await self._client.post(self.INITIATE_PATH, json=payload)
        except httpx.HTTPError as e:
            logger.error("gateway_initiate_unreachable",
                         purchase_order_id=request.purchase_order_id,
                         error=str(e), error_type=type(e).__name__)
            raise GatewayUnavailableError("initiate", str(e)) from e

        body = self._body(response)
        if not response.is_success:
            logger.warning("gateway_initiate_rejected",
                           purchase_order_id=request.purchase_order_id,
                           status_code=response.status_code)
            raise GatewayError(response.status_code, body)

        result = InitiateResponse.model_validate(body)
        logger.info("payment_initiated",
                    pidx=result.pidx,
                    purchase_order_id=request.purchase_order_id,
                    amount=request.amount)
        return result

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def lookup(self, pidx: str) -> LookupResponse:
        """Query settlement status, retrying transient failures."""
        if not pidx:
            raise ValidationError("pidx is required", {"field": "pidx"})

        attempt = 0
        while True:
            try:
                response = await self._client.post(self.LOOKUP_PATH, json={"pidx": pidx})
            except (httpx.TimeoutException, httpx.TransportError) as e:
                reason = f"{type(e).__name__}: {e}"
            else:
                if response.is_success:
                    result = LookupResponse.model_validate(self._body(response))
                    logger.info("payment_lookup",
                                pidx=pidx,
                                status=result.status.value,
                                attempt=attempt + 1)
                    return result
                if response.status_code < 500:
                    logger.warning("gateway_lookup_rejected",
                                   pidx=pidx, status_code=response.status_code)
                    raise GatewayError(response.status_code, self._body(response))
                reason = f"HTTP {response.status_code}"

            if attempt >= self.max_retries:
                logger.error("gateway_lookup_exhausted",
                             pidx=pidx, attempts=attempt + 1, reason=reason)
                raise GatewayUnavailableError("lookup", reason)

            delay = self.backoff_seconds * (2 ** attempt)
            logger.warning("gateway_lookup_retry",
                           pidx=pidx, attempt=attempt + 1, delay=delay, reason=reason)
            await asyncio.sleep(delay)
            attempt += 1

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"detail": response.text}
