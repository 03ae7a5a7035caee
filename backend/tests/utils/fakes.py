"""Scripted stand-ins for the payment sheet, the backend functions and Stripe."""
import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx

from marketplace.adapters.backend_client import BackendClient
from marketplace.adapters.payment_sheet import CANCELED_CODE, PaymentSheetConfig, SheetError, SheetResult
from utils.factories import CardFactory

BACKEND_URL = "http://backend.test"


class FakePaymentSheet:
    """
    Payment sheet that answers from a script.

    ``gate`` keeps the sheet open until the test sets it, which lets a test
    start a second flow while the first one is on screen.
    """

    def __init__(
        self,
        present_error: SheetError | None = None,
        init_error: SheetError | None = None,
        delay: float = 0.0,
    ):
        self.present_error = present_error
        self.init_error = init_error
        self.delay = delay
        self.gate: asyncio.Event | None = None
        self.opened = asyncio.Event()
        self.configs: list[PaymentSheetConfig] = []
        self.presented = 0

    @classmethod
    def canceling(cls) -> "FakePaymentSheet":
        return cls(present_error=SheetError(code=CANCELED_CODE, message="The payment flow has been canceled"))

    @classmethod
    def failing(cls, message: str = "Your card was declined.") -> "FakePaymentSheet":
        return cls(present_error=SheetError(code="Failed", message=message))

    async def init_payment_sheet(self, config: PaymentSheetConfig) -> SheetResult:
        self.configs.append(config)
        return SheetResult(error=self.init_error)

    async def present_payment_sheet(self) -> SheetResult:
        self.presented += 1
        self.opened.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        return SheetResult(error=self.present_error)


def backend_error(status_code: int, error_type: str, code: str, message: str = "Request failed") -> httpx.Response:
    """Error body in the shape the backend returns."""
    return httpx.Response(status_code, json={"error": message, "type": error_type, "code": code})


class FakeBackend:
    """
    In-memory backend behind ``httpx.MockTransport``.

    Intents created with a saved card come back with ``saved_status``;
    intents created without one wait for the sheet. ``retrieve-payment-intent``
    reports ``final_status`` unless an intent has its own entry in ``statuses``.
    ``errors`` maps a function name to a response or exception returned
    instead of the normal answer.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.tokens: list[str | None] = []
        self.intents: dict[str, dict[str, Any]] = {}
        self.statuses: dict[str, str] = {}
        self.saved_status = "succeeded"
        self.final_status = "succeeded"
        self.setup_status = "succeeded"
        self.setup_card = CardFactory.create()
        self.cards: dict[str, dict[str, Any]] = {}
        self.subscription_status = "active"
        self.subscription_requires_action = False
        self.errors: dict[str, httpx.Response | Exception | Callable[[dict[str, Any]], httpx.Response]] = {}
        self._sequence = 0

    def client(self, access_token: str | None = "user-token") -> BackendClient:
        return BackendClient(
            access_token=access_token,
            base_url=BACKEND_URL,
            anon_key="anon-test",
            transport=httpx.MockTransport(self.handler),
        )

    def called(self, function: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.calls if name == function]

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}_{self._sequence:04d}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        function = request.url.path.rsplit("/", 1)[-1]
        payload = json.loads(request.content or b"{}")
        self.calls.append((function, payload))
        self.tokens.append(request.headers.get("Authorization"))

        error = self.errors.get(function)
        if isinstance(error, Exception):
            raise error
        if isinstance(error, httpx.Response):
            return error
        if callable(error):
            return error(payload)

        answer = getattr(self, "_" + function.replace("-", "_"))(payload)
        return httpx.Response(200, json=answer)

    def _create_setup_intent(self, payload: dict[str, Any]) -> dict[str, Any]:
        setup_intent_id = self._next_id("seti")
        return {"setupIntentId": setup_intent_id, "clientSecret": f"{setup_intent_id}_secret"}

    def _retrieve_setup_intent(self, payload: dict[str, Any]) -> dict[str, Any]:
        card = self.setup_card if self.setup_status == "succeeded" else None
        return {"status": self.setup_status, "paymentMethod": card}

    def _get_payment_method(self, payload: dict[str, Any]) -> dict[str, Any]:
        token = payload["paymentMethodId"]
        card = self.cards.get(token) or CardFactory.create({"id": token})
        return {"paymentMethod": card}

    def _detach_payment_method(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {"ok": True}

    def _set_default_payment_method(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {"ok": True}

    def _create_payment_intent(self, payload: dict[str, Any]) -> dict[str, Any]:
        intent_id = self._next_id("pi")
        status = self.saved_status if payload.get("paymentMethodId") else "requires_payment_method"
        self.intents[intent_id] = payload
        return {
            "paymentIntentId": intent_id,
            "clientSecret": f"{intent_id}_secret",
            "status": status,
            "amount": payload["amount"],
            "currency": payload.get("currency", "usd"),
        }

    def _retrieve_payment_intent(self, payload: dict[str, Any]) -> dict[str, Any]:
        intent_id = payload["paymentIntentId"]
        created = self.intents.get(intent_id, {})
        return {
            "paymentIntentId": intent_id,
            "status": self.statuses.get(intent_id, self.final_status),
            "amount": created.get("amount"),
            "currency": created.get("currency", "usd"),
        }

    def _subscription_checkout(self, payload: dict[str, Any]) -> dict[str, Any]:
        if payload["action"] == "cancel_subscription":
            return {"ok": True}

        data = payload["subscriptionData"]
        intent_id = self._next_id("pi")
        self.intents[intent_id] = {"amount": None, "plan_id": data["plan_id"]}
        if data["payment_option"] == "one_time":
            return {
                "success": True,
                "requires_action": True,
                "client_secret": f"{intent_id}_secret",
                "payment_intent_id": intent_id,
                "status": "requires_payment_method",
            }
        return {
            "success": True,
            "requires_action": self.subscription_requires_action,
            "client_secret": f"{intent_id}_secret" if self.subscription_requires_action else None,
            "payment_intent_id": intent_id,
            "subscription_id": self._next_id("sub"),
            "status": self.subscription_status,
        }


class FakeStripeAdapter:
    """Stripe adapter double used by the backend route tests."""

    def __init__(self):
        self.customers: dict[str, str] = {}
        self.payment_methods: dict[str, dict[str, Any]] = {}
        self.setup_intents: dict[str, dict[str, Any]] = {}
        self.payment_intents: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.detached: list[str] = []
        self.defaults: dict[str, str] = {}
        self.saved_status = "succeeded"
        self.subscription_status = "active"
        self.subscription_intent_status = "succeeded"
        self.error: Exception | None = None
        self.event: Any = None
        self._sequence = 0

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}_{self._sequence:04d}"

    def _raise_if_scripted(self) -> None:
        if self.error is not None:
            raise self.error

    def add_card(self, customer_id: str | None) -> dict[str, Any]:
        card = CardFactory.create()
        card["customer"] = customer_id
        self.payment_methods[card["id"]] = card
        return card

    async def create_customer(self, email: str | None, metadata: dict[str, Any] | None = None) -> str:
        customer_id = self._next_id("cus")
        self.customers[customer_id] = metadata["user_id"] if metadata else ""
        return customer_id

    async def create_setup_intent(self, customer_id: str) -> dict[str, Any]:
        setup_intent_id = self._next_id("seti")
        self.setup_intents[setup_intent_id] = {"customer": customer_id, "status": "requires_payment_method"}
        return {"id": setup_intent_id, "client_secret": f"{setup_intent_id}_secret"}

    async def retrieve_setup_intent(self, setup_intent_id: str) -> dict[str, Any]:
        setup_intent = self.setup_intents[setup_intent_id]
        card = setup_intent.get("payment_method")
        return {
            "id": setup_intent_id,
            "status": setup_intent["status"],
            "customer": setup_intent["customer"],
            "payment_method": {k: v for k, v in card.items() if k != "customer"} if card else None,
        }

    async def retrieve_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        return dict(self.payment_methods[payment_method_id])

    async def detach_payment_method(self, payment_method_id: str) -> None:
        self.detached.append(payment_method_id)
        self.payment_methods[payment_method_id]["customer"] = None

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        self.defaults[customer_id] = payment_method_id

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: str,
        payment_method_id: str | None = None,
        idempotency_key: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self._raise_if_scripted()
        intent_id = self._next_id("pi")
        intent = {
            "id": intent_id,
            "status": self.saved_status if payment_method_id else "requires_payment_method",
            "amount": amount,
            "currency": currency,
            "client_secret": f"{intent_id}_secret",
            "customer": customer_id,
            "payment_method": payment_method_id,
            "metadata": dict(metadata or {}),
        }
        self.payment_intents[intent_id] = intent
        return {k: intent[k] for k in ("id", "status", "amount", "currency", "client_secret", "metadata")}

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        intent = self.payment_intents[payment_intent_id]
        return {k: intent[k] for k in ("id", "status", "amount", "currency", "customer")}

    async def cancel_payment_intent(self, payment_intent_id: str) -> None:
        self.payment_intents[payment_intent_id]["status"] = "canceled"

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None = None,
        save_default_payment_method: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self._raise_if_scripted()
        subscription_id = self._next_id("sub")
        intent_id = self._next_id("pi")
        now = datetime.utcnow().replace(microsecond=0)
        self.payment_intents[intent_id] = {
            "id": intent_id,
            "status": self.subscription_intent_status,
            "amount": None,
            "currency": "usd",
            "client_secret": f"{intent_id}_secret",
            "customer": customer_id,
            "payment_method": payment_method_id,
            "metadata": dict(metadata or {}),
        }
        subscription = {
            "id": subscription_id,
            "status": self.subscription_status,
            "current_period_start": now,
            "current_period_end": now + timedelta(days=30),
            "payment_intent_id": intent_id,
            "payment_intent_status": self.subscription_intent_status,
            "client_secret": f"{intent_id}_secret",
            "price_id": price_id,
            "save_default_payment_method": save_default_payment_method,
        }
        self.subscriptions[subscription_id] = subscription
        return subscription

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        subscription = self.subscriptions.get(subscription_id, {"id": subscription_id, "status": "active"})
        subscription["cancel_at_period_end"] = True
        return {
            "id": subscription_id,
            "status": subscription["status"],
            "cancel_at_period_end": True,
            "current_period_end": subscription.get("current_period_end"),
        }

    async def construct_webhook_event(self, payload: bytes, signature: str) -> Any:
        if signature != "valid-signature":
            raise ValueError("Invalid signature: no signatures found matching the expected signature")
        return json.loads(payload)
