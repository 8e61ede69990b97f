"""
HTTP client for the payment processor facade.

Only identifiers and the success/failure signal leave this module; every
transport or upstream error becomes ExternalServiceError.
"""
import logging

import httpx

from ..errors import ExternalServiceError
from .breaker import CircuitBreaker, CircuitBreakerOpen

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class HttpPaymentGateway:
    def __init__(self, base_url: str, breaker: CircuitBreaker | None = None, timeout: float = DEFAULT_TIMEOUT,
                 transport: httpx.AsyncBaseTransport | None = None):
        if not base_url:
            raise RuntimeError("PAYMENT_GATEWAY_URL environment variable is not set")
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.timeout = timeout
        self.transport = transport

    async def _call(self, method: str, path: str, payload: dict | None = None, idempotency_key: str | None = None) -> dict:
        if self.breaker:
            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as e:
                raise ExternalServiceError(str(e), status_code=503)

        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.request(method, url, json=payload, headers=headers)
                resp.raise_for_status()
        except httpx.TimeoutException:
            await self._failure()
            raise ExternalServiceError(f"Timeout calling payment gateway: {path}", status_code=504)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            # a 4xx is a decline, not an outage
            if status >= 500:
                await self._failure()
            raise ExternalServiceError(f"Payment gateway rejected {path}: {e.response.text}", status_code=status)
        except httpx.HTTPError as e:
            await self._failure()
            raise ExternalServiceError(f"Bad gateway calling payment gateway: {path} ({e})", status_code=502)

        if self.breaker:
            await self.breaker.record_success()
        return resp.json() if resp.content else {}

    async def _failure(self):
        if self.breaker:
            await self.breaker.record_failure()

    @staticmethod
    def _require(data: dict, key: str, path: str) -> str:
        value = data.get(key)
        if not value:
            raise ExternalServiceError(f"Payment gateway response to {path} has no {key}")
        return value

    async def create_hold(self, amount, platform_fee_amount, payout_destination, metadata=None):
        payload = {
            "amount": amount,
            "currency": "usd",
            "capture_method": "manual",
            "application_fee_amount": platform_fee_amount,
            "transfer_destination": payout_destination,
            "metadata": metadata or {},
        }
        key = (metadata or {}).get("transaction_id")
        data = await self._call("POST", "/payment_intents", payload, idempotency_key=key)
        return self._require(data, "id", "/payment_intents")

    async def confirm(self, intent_id):
        await self._call("POST", f"/payment_intents/{intent_id}/confirm", idempotency_key=f"confirm-{intent_id}")

    async def cancel(self, intent_id):
        await self._call("POST", f"/payment_intents/{intent_id}/cancel", idempotency_key=f"cancel-{intent_id}")

    async def capture(self, intent_id, amount=None):
        payload = {"amount_to_capture": amount} if amount is not None else {}
        await self._call("POST", f"/payment_intents/{intent_id}/capture", payload, idempotency_key=f"capture-{intent_id}")

    async def refund(self, intent_id, amount, reason):
        data = await self._call(
            "POST",
            "/refunds",
            {"payment_intent": intent_id, "amount": amount, "reason": reason},
            idempotency_key=f"refund-{intent_id}-{amount}",
        )
        return self._require(data, "id", "/refunds")

    async def transfer(self, destination, amount, metadata=None):
        key = (metadata or {}).get("payout_id")
        data = await self._call(
            "POST",
            "/transfers",
            {"destination": destination, "amount": amount, "currency": "usd", "metadata": metadata or {}},
            idempotency_key=key,
        )
        return self._require(data, "id", "/transfers")
