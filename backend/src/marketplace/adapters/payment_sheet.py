"""Interface to the processor-provided payment sheet.

The sheet is a native, app-wide singleton modal. The checkout core only talks
to it through this protocol, so the host application injects the bridge and
tests inject a scripted fake.
"""
from typing import Protocol

from pydantic import BaseModel, SecretStr

# Error code the sheet reports when the user dismisses it
CANCELED_CODE = "Canceled"


class SheetError(BaseModel):
    """Error reported by the sheet."""

    code: str | None = None
    message: str = ""

    @property
    def canceled(self) -> bool:
        return self.code == CANCELED_CODE


class SheetResult(BaseModel):
    """Return value of ``init_payment_sheet`` and ``present_payment_sheet``."""

    error: SheetError | None = None


class PaymentSheetConfig(BaseModel):
    """Configuration handed to ``init_payment_sheet``.

    Exactly one of the two secrets is set: a payment intent secret for a
    charge, or a setup intent secret for saving a card.
    """

    merchant_display_name: str
    payment_intent_client_secret: SecretStr | None = None
    setup_intent_client_secret: SecretStr | None = None
    allows_delayed_payment_methods: bool = False
    return_url: str | None = None
    style: str = "alwaysDark"


class PaymentSheet(Protocol):
    """Bridge to the native payment sheet."""

    async def init_payment_sheet(self, config: PaymentSheetConfig) -> SheetResult:
        ...

    async def present_payment_sheet(self) -> SheetResult:
        ...
