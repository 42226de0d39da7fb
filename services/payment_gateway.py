"""Payment gateway client - creates payment intents for new transactions"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.json_serialization import ensure_json_safe

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """Custom exception for payment gateway errors"""
    pass


@dataclass
class PaymentIntentResult:
    """Outcome of a payment intent request"""
    success: bool
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "paymentIntentId": self.payment_intent_id,
            "clientSecret": self.client_secret,
        }


class PaymentGateway:
    """
    HTTP payment-intent client.

    ``create_payment_intent`` never raises; failures come back as
    ``PaymentIntentResult(success=False)`` so the caller can degrade.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout_seconds: Optional[int] = None):
        self.base_url = (base_url or Config.PAYMENT_GATEWAY_URL or "").rstrip("/")
        self.api_key = api_key or Config.PAYMENT_GATEWAY_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.PAYMENT_GATEWAY_TIMEOUT)

        if not self.base_url:
            logger.warning("Payment gateway URL not configured - payment intents will be skipped")

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            'accept': 'application/json',
            'content-type': 'application/json',
        }
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        return headers

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}{path}",
                    json=payload,
                    headers=self._get_headers(),
                ) as response:
                    if response.status in (200, 201):
                        return await response.json()
                    error_text = await response.text()
                    logger.error(f"Payment gateway error: HTTP {response.status}: {error_text}")
                    raise PaymentGatewayError(f"HTTP {response.status}")
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to payment gateway: {e}")
            raise PaymentGatewayError(f"Network error: {e}") from e

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        transaction_id: int,
        buyer_id: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntentResult:
        if not self.base_url:
            return PaymentIntentResult(success=False, error="Payment gateway not configured")

        payload = ensure_json_safe({
            "amount": amount,
            "currency": currency.lower(),
            "metadata": {
                **(metadata or {}),
                "transactionId": transaction_id,
                "buyerId": buyer_id,
            },
        })

        try:
            data = await self._post("/payment_intents", payload)
        except PaymentGatewayError as e:
            return PaymentIntentResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"Unexpected error creating payment intent for transaction {transaction_id}: {e}")
            return PaymentIntentResult(success=False, error=f"Unexpected error: {e}")

        intent_id = data.get("id")
        if not intent_id:
            return PaymentIntentResult(success=False, error="Gateway response missing intent id", raw=data)

        logger.info(f"💳 PAYMENT_INTENT: Created {intent_id} for transaction {transaction_id}")
        return PaymentIntentResult(
            success=True,
            payment_intent_id=intent_id,
            client_secret=data.get("client_secret"),
            raw=data,
        )
