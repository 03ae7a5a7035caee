"""Exclusive access to the payment sheet.

The native payment sheet is a singleton: presenting it twice at once corrupts
its state. One ``ConfirmationLock`` is created per app and shared by every
flow that can open the sheet (one-time checkout, 3-D Secure step-up for saved
cards, card setup, plan purchase).
"""
import asyncio
import enum
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from pydantic import SecretStr

from marketplace.adapters.payment_sheet import PaymentSheet, PaymentSheetConfig
from marketplace.config import settings
from marketplace.errors import PaymentNetworkError, ProcessorError, in_progress_error
from marketplace.schemas.error import ErrorCode

logger = structlog.get_logger(__name__)


class ConfirmationLock:
    """
    Non-queuing mutex around the payment sheet.

    A caller arriving while the lock is held is rejected immediately instead
    of waiting. Check and set happen with no await in between, which makes
    them atomic on the event loop.
    """

    def __init__(self) -> None:
        self._held = False
        self._owner: str | None = None

    @property
    def held(self) -> bool:
        return self._held

    @property
    def owner(self) -> str | None:
        return self._owner

    def try_acquire(self, owner: str = "checkout") -> bool:
        if self._held:
            return False
        self._held = True
        self._owner = owner
        return True

    def release(self) -> None:
        self._held = False
        self._owner = None

    @asynccontextmanager
    async def hold(self, owner: str = "checkout") -> AsyncIterator[None]:
        """
        Hold the lock for the duration of the block.

        Raises:
            PaymentValidationError: The sheet is already in use (``payment_in_progress``)
        """
        if not self.try_acquire(owner):
            logger.warning("payment_sheet_busy", requested_by=owner, held_by=self._owner)
            raise in_progress_error()
        try:
            yield
        finally:
            logger.debug("payment_sheet_lock_released", owner=owner)
            self.release()


class ConfirmationOutcome(str, enum.Enum):
    """How a sheet presentation ended when it did not raise."""

    COMPLETED = "completed"
    CANCELED = "canceled"


class ConfirmationPresenter:
    """Initializes and presents the payment sheet under the shared lock, with a timeout."""

    def __init__(
        self,
        sheet: PaymentSheet,
        lock: ConfirmationLock,
        timeout_seconds: float | None = None,
    ):
        self.sheet = sheet
        self.lock = lock
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.confirmation_timeout_seconds

    def payment_config(self, client_secret: SecretStr | str) -> PaymentSheetConfig:
        return PaymentSheetConfig(
            merchant_display_name=settings.merchant_display_name,
            payment_intent_client_secret=client_secret,
            allows_delayed_payment_methods=False,
            return_url=settings.payment_return_url,
        )

    def setup_config(self, client_secret: str) -> PaymentSheetConfig:
        return PaymentSheetConfig(
            merchant_display_name=settings.merchant_display_name,
            setup_intent_client_secret=client_secret,
            return_url=settings.payment_return_url,
        )

    async def confirm(self, config: PaymentSheetConfig, owner: str = "checkout") -> ConfirmationOutcome:
        """
        Run one sheet interaction while holding the lock.

        Args:
            config: Sheet configuration carrying the intent secret
            owner: Label of the flow holding the lock, for logs

        Returns:
            COMPLETED when the sheet closed without error, CANCELED when the user dismissed it

        Raises:
            PaymentValidationError: The sheet is busy
            ProcessorError: The sheet failed to initialize or reported an error
            PaymentNetworkError: The sheet did not answer within the timeout
        """
        async with self.lock.hold(owner):
            return await self._present(config, owner)

    async def confirm_locked(self, config: PaymentSheetConfig, owner: str = "checkout") -> ConfirmationOutcome:
        """Same as ``confirm`` for callers that already hold the lock."""
        return await self._present(config, owner)

    async def _present(self, config: PaymentSheetConfig, owner: str) -> ConfirmationOutcome:
        logger.info("payment_sheet_initializing", owner=owner)
        init_result = await self.sheet.init_payment_sheet(config)
        if init_result.error is not None:
            logger.error("payment_sheet_init_failed", owner=owner, code=init_result.error.code)
            raise ProcessorError(
                f"Payment sheet setup failed: {init_result.error.message}",
                code=ErrorCode.PAYMENT_SHEET_INIT_FAILED,
            )

        logger.info("payment_sheet_presenting", owner=owner, timeout_seconds=self.timeout_seconds)
        try:
            present_result = await asyncio.wait_for(
                self.sheet.present_payment_sheet(),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error("payment_sheet_timed_out", owner=owner, timeout_seconds=self.timeout_seconds)
            raise PaymentNetworkError(code=ErrorCode.CONFIRMATION_TIMEOUT) from e

        error = present_result.error
        if error is None:
            logger.info("payment_sheet_completed", owner=owner)
            return ConfirmationOutcome.COMPLETED

        if error.canceled:
            logger.info("payment_sheet_canceled", owner=owner)
            return ConfirmationOutcome.CANCELED

        logger.warning("payment_sheet_failed", owner=owner, code=error.code)
        raise ProcessorError(
            f"Payment failed: {error.message}",
            code=ErrorCode.PAYMENT_SHEET_FAILED,
        )
