"""
Receipt validation against the PolyLingo validation backend.

A purchase counts as valid only when the backend accepts the receipt and,
if it reports an expiry, that expiry is still in the future. The network
call is raced against a hard deadline; how a timeout resolves depends on
the configured environment, never on guessing.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from pydantic import BaseModel

from config import settings
from subscription.errors import ValidationTimeoutError
from subscription.models import PurchaseRecord, ValidationResult, to_millis
from utils.logger import logger


VERIFY_PATH = "/api/iap/verify"


class VerifyReceiptRequest(BaseModel):
    receiptData: str
    isTest: bool
    platform: str


class VerifyReceiptResponse(BaseModel):
    isValid: bool
    expiresDate: Optional[datetime] = None


class ReceiptValidator(ABC):
    """Decides whether a purchase grants an entitlement"""

    @abstractmethod
    async def validate(self, purchase: PurchaseRecord) -> ValidationResult:
        pass


class HttpReceiptValidator(ReceiptValidator):
    """
    Validates receipts with ``POST {base_url}/api/iap/verify``.

    Args:
        base_url: Validation backend base URL
        api_key: Sent as the ``x-api-key`` header
        use_sandbox: Sent as ``isTest`` so the backend picks the sandbox server
        lenient: Accept a well-formed purchase when the backend cannot be
            reached (development builds only)
        timeout: Hard deadline in seconds for the whole validation call
        client: Optional shared httpx.AsyncClient
    """

    def __init__(
        self,
        base_url: str = settings.VALIDATION_API_BASE_URL,
        api_key: Optional[str] = settings.IAP_API_SECRET_KEY,
        use_sandbox: bool = settings.use_sandbox_validation,
        lenient: bool = settings.is_development,
        timeout: float = settings.VALIDATION_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.use_sandbox = use_sandbox
        self.lenient = lenient
        self.timeout = timeout
        self._client = client
        self._clock = clock

    async def validate(self, purchase: PurchaseRecord) -> ValidationResult:
        try:
            response = await self._verify_with_deadline(purchase)
        except (ValidationTimeoutError, httpx.HTTPError) as e:
            logger.warning(f"Receipt validation unavailable for {purchase.product_id}: {e}")
            return self._fallback(purchase, str(e))
        except ValueError as e:
            # JSON decoding and pydantic validation errors
            logger.error(f"Malformed validation response: {e}")
            return ValidationResult(valid=False, reason="malformed_response")

        if not response.isValid:
            logger.info(f"Receipt rejected for {purchase.product_id}")
            return ValidationResult(valid=False, reason="rejected")

        if response.expiresDate is None:
            return ValidationResult(valid=True)

        expires_at = response.expiresDate
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        if self._clock() >= expires_at:
            logger.info(f"Receipt for {purchase.product_id} expired at {expires_at.isoformat()}")
            return ValidationResult(valid=False, expires_at=to_millis(expires_at), reason="expired")

        return ValidationResult(valid=True, expires_at=to_millis(expires_at))

    async def _verify_with_deadline(self, purchase: PurchaseRecord) -> VerifyReceiptResponse:
        try:
            return await asyncio.wait_for(self._post_receipt(purchase), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ValidationTimeoutError(f"Validation timed out after {self.timeout}s")

    async def _post_receipt(self, purchase: PurchaseRecord) -> VerifyReceiptResponse:
        body = VerifyReceiptRequest(
            receiptData=purchase.receipt,
            isTest=self.use_sandbox,
            platform=purchase.platform or settings.PLATFORM,
        )
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key

        url = f"{self.base_url}{VERIFY_PATH}"
        if self._client is not None:
            response = await self._client.post(url, json=body.model_dump(), headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=body.model_dump(), headers=headers)

        response.raise_for_status()
        return VerifyReceiptResponse.model_validate(response.json())

    def _fallback(self, purchase: PurchaseRecord, reason: str) -> ValidationResult:
        """Outcome when the backend could not give an answer"""
        if self.lenient:
            has_proof = bool(purchase.product_id and (purchase.receipt or purchase.purchase_token))
            if has_proof:
                logger.info("Validation unavailable, accepting purchase in development")
            return ValidationResult(valid=has_proof, reason=None if has_proof else reason)
        return ValidationResult(valid=False, reason=reason)
