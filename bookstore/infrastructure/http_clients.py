import httpx
import logging
import uuid
from typing import Optional
import asyncio

from bookstore.application.interfaces import CatalogService, NotificationsService, PaymentProcessor
from bookstore.domain.exceptions import CatalogServiceError, ExternalProcessorError
from bookstore.domain.order import BookSnapshot

logger = logging.getLogger(__name__)


class HTTPCatalogClient(CatalogService):
    def __init__(self, base_url: str, api_token: str):
        self._base_url = base_url
        self._api_token = api_token

    async def get_book(self, product_id: str) -> Optional[BookSnapshot]:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self._base_url}/api/catalog/books/{product_id}",
                    headers={"X-API-Key": self._api_token},
                    timeout=10.0
                )

                if response.status_code == 200:
                    data = response.json()
                    return BookSnapshot(
                        title=data["title"],
                        author=data.get("author", ""),
                        isbn=data.get("isbn", ""),
                        publisher=data.get("publisher", ""),
                        cover_image=data.get("cover_image")
                    )
                elif response.status_code == 404:
                    return None
                else:
                    raise CatalogServiceError(f"Catalog service error: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Catalog service connection error: {e}")
            raise CatalogServiceError(f"Catalog service unavailable: {str(e)}")


class HTTPPaymentProcessorClient(PaymentProcessor):
    def __init__(self, base_url: str, api_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url
        self._api_token = api_token
        self._transport = transport

    async def capture(self, instrument_id: str, amount: int, reference: str, idempotency_key: str) -> str:
        return await self._post("captures", instrument_id, amount, reference, idempotency_key)

    async def refund(self, instrument_id: str, amount: int, reference: str, idempotency_key: str) -> str:
        return await self._post("refunds", instrument_id, amount, reference, idempotency_key)

    async def _post(self, operation: str, instrument_id: str, amount: int, reference: str, idempotency_key: str) -> str:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/api/{operation}",
                    json={
                        "instrument_id": instrument_id,
                        "amount": amount,
                        "reference": reference,
                        "idempotency_key": idempotency_key
                    },
                    headers={
                        "X-API-Key": self._api_token,
                        "Content-Type": "application/json"
                    },
                    timeout=30.0
                )

                if response.status_code in (200, 201):
                    try:
                        data = response.json()
                    except ValueError:
                        data = None
                    if not isinstance(data, dict):
                        raise ExternalProcessorError(f"Payment processor sent an unreadable {operation} response")
                    if data.get("status", "approved") != "approved":
                        raise ExternalProcessorError(
                            f"Payment processor declined {operation}: {data.get('reason', 'no reason given')}"
                        )
                    if not data.get("id"):
                        raise ExternalProcessorError(f"Payment processor response for {operation} has no id")
                    return data["id"]
                else:
                    raise ExternalProcessorError(f"Payment processor error on {operation}: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Payment processor connection error: {e}")
            raise ExternalProcessorError(f"Payment processor unavailable: {str(e)}")


class SimulatedPaymentProcessor(PaymentProcessor):
    """Approves every capture and refund; used when no processor is configured."""

    async def capture(self, instrument_id: str, amount: int, reference: str, idempotency_key: str) -> str:
        logger.info(f"Simulated capture of {amount} on {instrument_id} ({reference})")
        return f"SIM-CAP-{uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key).hex[:12].upper()}"

    async def refund(self, instrument_id: str, amount: int, reference: str, idempotency_key: str) -> str:
        logger.info(f"Simulated refund of {amount} on {instrument_id} ({reference})")
        return f"SIM-REF-{uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key).hex[:12].upper()}"


class HTTPNotificationsClient(NotificationsService):
    def __init__(self, base_url: str, api_token: str, max_retries: int = 3, retry_delay: float = 1.0):
        self._base_url = base_url
        self._api_token = api_token
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    async def send(self, kind: str, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        """Sends a notification, retrying on failure"""
        for attempt in range(self._max_retries):
            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        f"{self._base_url}/api/notifications",
                        json={
                            "kind": kind,
                            "user_id": user_id,
                            "message": message,
                            "reference_id": reference_id,
                            "idempotency_key": idempotency_key
                        },
                        headers={"X-API-Key": self._api_token},
                        timeout=10.0
                    )

                    if response.status_code in (200, 201):
                        logger.info(f"Notification {kind} sent (attempt {attempt + 1})")
                        return True
                    else:
                        logger.warning(f"Notification service returned {response.status_code}")

            except httpx.HTTPError as e:
                logger.warning(f"Notification send failed (attempt {attempt + 1}/{self._max_retries}): {e}")

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay)

        logger.error(f"Could not send notification {kind} after {self._max_retries} attempts")
        return False
