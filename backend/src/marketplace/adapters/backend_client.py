"""HTTP client for the trusted backend functions.

The app never holds processor secret keys. Every charge, setup intent and
payment-method mutation goes through ``/functions/v1/<name>`` on the backend,
authenticated with the user's bearer token.
"""
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from marketplace.config import settings
from marketplace.errors import (
    PaymentAuthError,
    PaymentError,
    PaymentNetworkError,
    ProcessorError,
    error_for,
)
from marketplace.schemas.backend import (
    CreatePaymentIntentRequest,
    PaymentIntentResponse,
    PaymentMethodResponse,
    RetrieveSetupIntentResponse,
    SetupIntentResponse,
)
from marketplace.schemas.error import BackendErrorResponse, ErrorCode
from marketplace.schemas.payment import IntentStatus, PaymentIntent
from marketplace.schemas.payment_method import ProcessorPaymentMethod
from marketplace.schemas.subscription import PaymentOption, SubscriptionPurchaseResponse

logger = structlog.get_logger(__name__)

FUNCTIONS_PREFIX = "/functions/v1"


class BackendClient:
    """Thin async client over the backend function endpoints."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        anon_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize backend client.

        Args:
            access_token: Bearer token of the signed-in user
            base_url: Backend base URL (defaults to settings)
            anon_key: Public API key (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        self.access_token = access_token
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.backend_url,
            timeout=timeout or settings.backend_timeout_seconds,
            headers={"apikey": anon_key or settings.backend_anon_key},
            transport=transport,
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def set_access_token(self, access_token: str | None) -> None:
        """Swap the bearer credential after a sign-in or token refresh."""
        self.access_token = access_token

    async def invoke(self, function: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Call one backend function.

        Args:
            function: Function name, e.g. ``create-payment-intent``
            payload: JSON body

        Returns:
            Decoded JSON response

        Raises:
            PaymentAuthError: No session, or the backend rejected the token
            PaymentNetworkError: Transport failure or 5xx
            PaymentError: Typed error decoded from a 4xx body
        """
        if not self.access_token:
            raise PaymentAuthError("User not authenticated", code=ErrorCode.NOT_AUTHENTICATED)

        try:
            response = await self._client.post(
                f"{FUNCTIONS_PREFIX}/{function}",
                json=payload,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.TimeoutException as e:
            logger.warning("backend_timeout", function=function, error=str(e))
            raise PaymentNetworkError("Payment service timed out", code=ErrorCode.BACKEND_UNAVAILABLE) from e
        except httpx.TransportError as e:
            logger.warning("backend_unreachable", function=function, error=str(e))
            raise PaymentNetworkError(code=ErrorCode.BACKEND_UNAVAILABLE) from e

        if response.status_code in (401, 403):
            logger.warning("backend_auth_rejected", function=function, status_code=response.status_code)
            raise PaymentAuthError(code=ErrorCode.SESSION_EXPIRED)

        if response.status_code >= 500:
            logger.error("backend_server_error", function=function, status_code=response.status_code)
            raise PaymentNetworkError(code=ErrorCode.BACKEND_UNAVAILABLE)

        if response.status_code >= 400:
            raise self._decode_error(function, response)

        return response.json()

    def _decode_error(self, function: str, response: httpx.Response) -> PaymentError:
        try:
            body = BackendErrorResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.error("backend_error_unreadable", function=function, status_code=response.status_code)
            return ProcessorError(f"Request to {function} failed", code=ErrorCode.PROCESSOR_ERROR)

        logger.info(
            "backend_error",
            function=function,
            status_code=response.status_code,
            error_type=body.type.value,
            code=body.code,
        )
        return error_for(body.type, body.error, code=body.code)

    # Setup intents and payment methods

    async def create_setup_intent(self) -> SetupIntentResponse:
        data = await self.invoke("create-setup-intent", {})
        return SetupIntentResponse.model_validate(data)

    async def retrieve_setup_intent(self, setup_intent_id: str) -> RetrieveSetupIntentResponse:
        data = await self.invoke("retrieve-setup-intent", {"setupIntentId": setup_intent_id})
        return RetrieveSetupIntentResponse.model_validate(data)

    async def get_payment_method(self, processor_token: str) -> ProcessorPaymentMethod:
        data = await self.invoke("get-payment-method", {"paymentMethodId": processor_token})
        return PaymentMethodResponse.model_validate(data).payment_method

    async def detach_payment_method(self, processor_token: str) -> None:
        await self.invoke("detach-payment-method", {"paymentMethodId": processor_token})

    async def set_default_payment_method(self, processor_token: str) -> None:
        await self.invoke("set-default-payment-method", {"paymentMethodId": processor_token})

    # Payment intents

    async def create_payment_intent(self, request: CreatePaymentIntentRequest) -> PaymentIntent:
        data = await self.invoke(
            "create-payment-intent",
            request.model_dump(by_alias=True, exclude_none=True),
        )
        return self._to_intent(PaymentIntentResponse.model_validate(data))

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        data = await self.invoke("retrieve-payment-intent", {"paymentIntentId": payment_intent_id})
        return self._to_intent(PaymentIntentResponse.model_validate(data))

    @staticmethod
    def _to_intent(response: PaymentIntentResponse) -> PaymentIntent:
        status = None
        if response.status:
            try:
                status = IntentStatus(response.status)
            except ValueError:
                logger.warning(
                    "payment_intent_unknown_status",
                    payment_intent_id=response.payment_intent_id,
                    status=response.status,
                )
        return PaymentIntent(
            id=response.payment_intent_id,
            client_secret=response.client_secret,
            amount=response.amount,
            currency=response.currency,
            status=status,
        )

    # Subscriptions

    async def create_subscription(
        self,
        plan_id: str,
        payment_option: PaymentOption,
        payment_method_id: str | None = None,
    ) -> SubscriptionPurchaseResponse:
        data = await self.invoke(
            "subscription-checkout",
            {
                "action": "create_subscription",
                "subscriptionData": {
                    "plan_id": plan_id,
                    "payment_method_id": payment_method_id,
                    "payment_option": payment_option.value,
                },
            },
        )
        return SubscriptionPurchaseResponse.model_validate(data)

    async def cancel_subscription(self, processor_subscription_id: str) -> None:
        await self.invoke(
            "subscription-checkout",
            {"action": "cancel_subscription", "subscriptionId": processor_subscription_id},
        )
