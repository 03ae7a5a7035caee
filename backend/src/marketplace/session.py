"""Per-user checkout session.

Holds the service graph for the signed-in user and the cached state screens
render (saved methods, transaction history, last error). Auth transitions
rebuild or tear it down.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.adapters.backend_client import BackendClient
from marketplace.adapters.payment_sheet import PaymentSheet
from marketplace.database import AsyncSessionLocal
from marketplace.errors import PaymentAuthError, PaymentError
from marketplace.models.payment_method import PaymentMethod
from marketplace.models.transaction import Transaction
from marketplace.schemas.cart import AddToCartData, CartSummary
from marketplace.schemas.error import ErrorCode, PaymentErrorDetail
from marketplace.schemas.payment import CheckoutFlow, CheckoutState, PaymentResult
from marketplace.schemas.subscription import PaymentOption
from marketplace.services.cart_service import CartService
from marketplace.services.checkout_service import CartCheckoutResult, CartCheckoutService, CheckoutOrchestrator
from marketplace.services.confirmation import ConfirmationLock, ConfirmationPresenter
from marketplace.services.order_service import OrderService
from marketplace.services.payment_intent_gateway import PaymentIntentGateway
from marketplace.services.payment_method_service import PaymentMethodService
from marketplace.services.subscription_service import SubscriptionService
from marketplace.services.transaction_service import TransactionService

logger = structlog.get_logger(__name__)


class AuthUser(BaseModel):
    """Signed-in user as reported by the auth provider."""

    id: str
    access_token: str
    email: Optional[str] = None


class CheckoutSession:
    """
    App-lifetime holder of the checkout services.

    One ``ConfirmationLock`` lives here for the whole app and survives
    sign-in and sign-out, since the payment sheet it guards is app-wide.
    """

    def __init__(
        self,
        sheet: PaymentSheet,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        backend_factory: Callable[[str], BackendClient] = lambda token: BackendClient(access_token=token),
        lock: Optional[ConfirmationLock] = None,
        timeout_seconds: Optional[float] = None,
        on_state_change: Optional[Callable[[CheckoutState], None]] = None,
    ):
        self.sheet = sheet
        self.session_factory = session_factory
        self.backend_factory = backend_factory
        self.lock = lock or ConfirmationLock()
        self.presenter = ConfirmationPresenter(sheet, self.lock, timeout_seconds)
        self.on_state_change = on_state_change

        self.user: Optional[AuthUser] = None
        self.payment_methods: list[PaymentMethod] = []
        self.transactions: list[Transaction] = []
        self.last_error: Optional[PaymentErrorDetail] = None

        self._db: Optional[AsyncSession] = None
        self._backend: Optional[BackendClient] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    async def on_auth_state_change(self, user: Optional[AuthUser]) -> None:
        """
        React to sign-in, sign-out and token refresh.

        Signing out drops every cached payment value and deletes the
        signed-out user's cart, so nothing leaks to the next account.
        """
        previous = self.user

        if user is not None and previous is not None and user.id == previous.id:
            # Token refresh
            self.user = user
            if self._backend is not None:
                self._backend.set_access_token(user.access_token)
            return

        if previous is not None:
            await self._tear_down(previous)

        if user is not None:
            self.user = user
            self._db = self.session_factory()
            self._backend = self.backend_factory(user.access_token)
            logger.info("checkout_session_started", user_id=user.id)

    async def _tear_down(self, previous: AuthUser) -> None:
        try:
            if self._db is not None:
                await CartService(self._db).clear(previous.id)
                await self._db.commit()
        finally:
            self.payment_methods = []
            self.transactions = []
            self.last_error = None
            self.user = None
            if self._backend is not None:
                await self._backend.aclose()
            if self._db is not None:
                await self._db.close()
            self._backend = None
            self._db = None
            logger.info("checkout_session_cleared", user_id=previous.id)

    async def close(self) -> None:
        await self.on_auth_state_change(None)

    # Service graph

    def _require_user(self) -> AuthUser:
        if self.user is None or self._db is None or self._backend is None:
            raise PaymentAuthError("User not authenticated", code=ErrorCode.NOT_AUTHENTICATED)
        return self.user

    @property
    def cart(self) -> CartService:
        self._require_user()
        return CartService(self._db)

    @property
    def methods(self) -> PaymentMethodService:
        self._require_user()
        return PaymentMethodService(self._db, self._backend, self.presenter)

    @property
    def gateway(self) -> PaymentIntentGateway:
        self._require_user()
        return PaymentIntentGateway(self._backend)

    @property
    def orders(self) -> OrderService:
        self._require_user()
        return OrderService(self._db)

    @property
    def subscriptions(self) -> SubscriptionService:
        self._require_user()
        return SubscriptionService(self._db, self._backend, self.methods, self.gateway, self.presenter)

    def orchestrator(self) -> CheckoutOrchestrator:
        return CheckoutOrchestrator(self.methods, self.gateway, self.presenter, self.on_state_change)

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[AsyncSession]:
        self._require_user()
        try:
            yield self._db
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

    # Actions used by screens. Failures land in ``last_error``.

    async def add_to_cart(self, data: AddToCartData) -> bool:
        try:
            async with self._unit_of_work():
                await self.cart.add_item(self.user.id, data)
        except PaymentError as e:
            self.last_error = e.to_detail()
            return False
        return True

    async def cart_summary(self) -> CartSummary:
        return await self.cart.get_summary(self._require_user().id)

    async def refresh_payment_methods(self) -> list[PaymentMethod]:
        user = self._require_user()
        self.payment_methods = await self.methods.list_payment_methods(user.id)
        return self.payment_methods

    async def add_payment_method(self) -> Optional[PaymentMethod]:
        """Run the card setup flow. Returns None on cancel or failure."""
        try:
            async with self._unit_of_work():
                payment_method = await self.methods.add_via_setup_flow(self.user.id)
        except PaymentError as e:
            self.last_error = e.to_detail()
            return None
        await self.refresh_payment_methods()
        return payment_method

    async def remove_payment_method(self, payment_method_id: str) -> bool:
        try:
            async with self._unit_of_work():
                await self.methods.remove_payment_method(self.user.id, payment_method_id)
        except PaymentError as e:
            self.last_error = e.to_detail()
            return False
        await self.refresh_payment_methods()
        return True

    async def set_default_payment_method(self, payment_method_id: str) -> bool:
        try:
            async with self._unit_of_work():
                await self.methods.set_default_payment_method(self.user.id, payment_method_id)
        except PaymentError as e:
            self.last_error = e.to_detail()
            return False
        await self.refresh_payment_methods()
        return True

    async def checkout(
        self,
        flow: CheckoutFlow | str,
        payment_method_id: Optional[str] = None,
    ) -> CartCheckoutResult:
        """Check out the whole cart."""
        self.last_error = None
        async with self._unit_of_work():
            service = CartCheckoutService(self.cart, self.orders, self.orchestrator())
            result = await service.checkout_cart(self.user.id, flow, payment_method_id)
        self.last_error = result.error
        return result

    async def purchase_plan(
        self,
        plan_id: str,
        option: PaymentOption | str,
        payment_method_id: Optional[str] = None,
    ) -> PaymentResult:
        self.last_error = None
        async with self._unit_of_work():
            result = await self.subscriptions.purchase(self.user.id, plan_id, option, payment_method_id)
        self.last_error = result.error
        return result

    async def refresh_transactions(self) -> list[Transaction]:
        user = self._require_user()
        self.transactions = await TransactionService(self._db).list_transactions(user.id)
        return self.transactions

    def clear_error(self) -> None:
        self.last_error = None
