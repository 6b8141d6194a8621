import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

import stripe

from app.config import settings
from app.utils.money import CENT, to_money

logger = logging.getLogger("soulseer.payments")


class PaymentError(Exception):
    pass


@dataclass
class DepositConfirmation:
    user_id: str
    amount: Decimal


class PaymentProvider(ABC):
    """Remote money movement. Every call may fail with PaymentError."""

    @abstractmethod
    async def create_deposit(self, user_id: str, amount: Decimal, idempotency_key: str) -> str:
        """Start a deposit and return the url the client is redirected to."""

    @abstractmethod
    async def confirm_deposit(self, provider_session_id: str) -> DepositConfirmation:
        """Return the owner and paid amount of a completed deposit."""

    @abstractmethod
    async def create_payout_account(self, reader_id: str) -> str:
        ...

    @abstractmethod
    async def onboarding_link(self, account_id: str) -> str:
        ...

    @abstractmethod
    async def payouts_enabled(self, account_id: str) -> bool:
        ...

    @abstractmethod
    async def transfer_payout(self, account_id: str, amount: Decimal, idempotency_key: str) -> str:
        """Send ``amount`` to the payout account and return the transfer id.

        Repeating a call with the same ``idempotency_key`` must not move money
        twice; it returns the transfer created by the first call.
        """


def to_cents(amount: Decimal) -> int:
    return int((to_money(amount) / CENT).to_integral_value())


class StripePaymentProvider(PaymentProvider):
    def __init__(self, api_key: str = settings.STRIPE_SECRET_KEY, base_url: str = settings.PUBLIC_BASE_URL):
        stripe.api_key = api_key
        # the SDK resends failed requests under the same idempotency key
        stripe.max_network_retries = 2
        self.base_url = base_url.rstrip("/")

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.warning("STRIPE_ERROR call=%s err=%s", getattr(fn, "__qualname__", fn), exc)
            raise PaymentError(getattr(exc, "user_message", None) or str(exc)) from exc

    async def create_deposit(self, user_id: str, amount: Decimal, idempotency_key: str) -> str:
        cents = to_cents(amount)
        session = await self._call(
            stripe.checkout.Session.create,
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": "usd",
                    "product_data": {
                        "name": "SoulSeer Balance Deposit",
                        "description": f"Add ${to_money(amount)} to your account balance",
                    },
                    "unit_amount": cents,
                },
                "quantity": 1,
            }],
            mode="payment",
            success_url=f"{self.base_url}/dashboard?deposit=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.base_url}/dashboard?deposit=cancelled",
            metadata={
                "user_id": user_id,
                "type": "balance_deposit",
                "amount_cents": str(cents),
            },
            idempotency_key=idempotency_key,
        )
        return session.url

    async def confirm_deposit(self, provider_session_id: str) -> DepositConfirmation:
        session = await self._call(stripe.checkout.Session.retrieve, provider_session_id)
        if session.payment_status != "paid":
            raise PaymentError("Payment not completed")
        metadata = session.metadata or {}
        cents = int(metadata.get("amount_cents") or 0)
        return DepositConfirmation(
            user_id=metadata.get("user_id") or "",
            amount=to_money(Decimal(cents) * CENT),
        )

    async def create_payout_account(self, reader_id: str) -> str:
        account = await self._call(stripe.Account.create, type="express", metadata={"reader_id": reader_id})
        return account.id

    async def onboarding_link(self, account_id: str) -> str:
        link = await self._call(
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=f"{self.base_url}/reader-dashboard?connect=refresh",
            return_url=f"{self.base_url}/reader-dashboard?connect=success",
            type="account_onboarding",
        )
        return link.url

    async def payouts_enabled(self, account_id: str) -> bool:
        account = await self._call(stripe.Account.retrieve, account_id)
        return bool(account.details_submitted and account.payouts_enabled)

    async def transfer_payout(self, account_id: str, amount: Decimal, idempotency_key: str) -> str:
        transfer = await self._call(
            stripe.Transfer.create,
            amount=to_cents(amount),
            currency="usd",
            destination=account_id,
            idempotency_key=idempotency_key,
        )
        return transfer.id
