import logging
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import (
    Forbidden,
    InsufficientBalance,
    InvalidAmount,
    OnboardingIncomplete,
    PaymentFailed,
    PayoutRecordFailure,
    PayoutTooSmall,
    ReaderNotFound,
    ServiceError,
    UserNotFound,
)
from app.services.payments import PaymentError, PaymentProvider
from app.utils.money import ZERO, to_money
from models.reader import Reader
from models.user import User, new_id
from models.wallet import Transaction

logger = logging.getLogger("soulseer.ledger")


async def get_balance(db: AsyncSession, user_id: str) -> Decimal:
    balance = (await db.execute(select(User.balance).where(User.id == user_id))).scalar_one_or_none()
    if balance is None:
        raise UserNotFound()
    return to_money(balance)


async def get_reader_fresh(db: AsyncSession, reader_id: str) -> Reader:
    reader = (await db.execute(
        select(Reader).where(Reader.id == reader_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not reader:
        raise ReaderNotFound()
    return reader


class BalanceLedger:
    """Money movement between client balances, reader payouts and the provider.

    ``debit``/``credit``/``accrue_payout`` join the caller's transaction and
    never commit. ``confirm_deposit`` and ``payout`` talk to the payment
    provider and manage their own transactions through ``session_factory``.
    """

    def __init__(
        self,
        session_factory,
        payments: PaymentProvider | None = None,
        *,
        min_payout: Decimal = settings.MIN_PAYOUT,
        min_deposit: Decimal = settings.MIN_DEPOSIT,
        max_deposit: Decimal = settings.MAX_DEPOSIT,
    ):
        self.session_factory = session_factory
        self.payments = payments
        self.min_payout = to_money(min_payout)
        self.min_deposit = to_money(min_deposit)
        self.max_deposit = to_money(max_deposit)

    async def debit(
        self,
        db: AsyncSession,
        user_id: str,
        amount,
        *,
        type: str,
        description: str | None = None,
        reference_id: str | None = None,
        reference_type: str | None = None,
        allow_overdraft: bool = False,
    ) -> Transaction:
        amount = to_money(amount)
        if amount < ZERO:
            raise InvalidAmount()
        stmt = update(User).where(User.id == user_id)
        if not allow_overdraft:
            stmt = stmt.where(User.balance >= amount)
        result = await db.execute(
            stmt.values(balance=func.round(User.balance - amount, 2))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # raises UserNotFound for an unknown id
            await get_balance(db, user_id)
            raise InsufficientBalance()
        tx = Transaction(
            user_id=user_id,
            type=type,
            amount=-amount,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
        )
        db.add(tx)
        await db.flush()
        await db.refresh(tx)
        return tx

    async def credit(
        self,
        db: AsyncSession,
        user_id: str,
        amount,
        *,
        type: str,
        description: str | None = None,
        reference_id: str | None = None,
        reference_type: str | None = None,
    ) -> Transaction:
        amount = to_money(amount)
        if amount < ZERO:
            raise InvalidAmount()
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(balance=func.round(User.balance + amount, 2))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise UserNotFound()
        tx = Transaction(
            user_id=user_id,
            type=type,
            amount=amount,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
        )
        db.add(tx)
        await db.flush()
        await db.refresh(tx)
        return tx

    async def accrue_payout(self, db: AsyncSession, reader_id: str, amount, *, readings: int = 0):
        """Add earnings to pending_payout and total_earnings in one statement."""
        amount = to_money(amount)
        result = await db.execute(
            update(Reader)
            .where(Reader.id == reader_id)
            .values(
                pending_payout=func.round(Reader.pending_payout + amount, 2),
                total_earnings=func.round(Reader.total_earnings + amount, 2),
                total_readings=Reader.total_readings + readings,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ReaderNotFound()

    async def record_earning(self, db: AsyncSession, user_id: str, amount, session_id: str, session_type: str) -> Transaction:
        """Audit row for a reader's share of a session; pending_payout carries the money."""
        tx = Transaction(
            user_id=user_id,
            type="session_earning",
            amount=to_money(amount),
            description=f"{session_type} reading earnings",
            reference_id=session_id,
            reference_type="session",
        )
        db.add(tx)
        await db.flush()
        return tx

    async def list_transactions(self, db: AsyncSession, user_id: str) -> list[Transaction]:
        rows = await db.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        )
        return list(rows.scalars().all())

    def _require_payments(self) -> PaymentProvider:
        if self.payments is None:
            raise PaymentFailed("Payments are not configured")
        return self.payments

    # deposits

    async def create_deposit(self, user_id: str, amount, request_id: str | None = None) -> str:
        """Open a provider checkout; a repeated ``request_id`` returns the same checkout."""
        amount = to_money(amount)
        if amount < self.min_deposit or amount > self.max_deposit:
            raise InvalidAmount(f"Deposit must be between ${self.min_deposit} and ${self.max_deposit}")
        payments = self._require_payments()
        async with self.session_factory() as db:
            if await db.get(User, user_id) is None:
                raise UserNotFound()
        try:
            return await payments.create_deposit(user_id, amount, f"deposit-{user_id}-{request_id or new_id()}")
        except PaymentError as exc:
            logger.warning("DEPOSIT_CREATE_FAIL user=%s amount=%s err=%s", user_id, amount, exc)
            raise PaymentFailed()

    async def confirm_deposit(self, user_id: str, provider_session_id: str) -> Transaction:
        payments = self._require_payments()
        try:
            confirmation = await payments.confirm_deposit(provider_session_id)
        except PaymentError as exc:
            logger.warning("DEPOSIT_CONFIRM_FAIL user=%s ref=%s err=%s", user_id, provider_session_id, exc)
            raise PaymentFailed(str(exc) or None)
        if confirmation.user_id != user_id:
            raise Forbidden("Deposit belongs to another user")
        if confirmation.amount <= ZERO:
            raise InvalidAmount()

        async with self.session_factory() as db:
            existing = await self._find_reference(db, "stripe_checkout", provider_session_id)
            if existing:
                return existing
            try:
                tx = await self.credit(
                    db,
                    user_id,
                    confirmation.amount,
                    type="deposit",
                    description="Balance deposit via Stripe",
                    reference_id=provider_session_id,
                    reference_type="stripe_checkout",
                )
                await db.commit()
            except IntegrityError:
                # a concurrent confirmation won the unique reference
                await db.rollback()
                existing = await self._find_reference(db, "stripe_checkout", provider_session_id)
                if existing:
                    return existing
                raise
        logger.info("DEPOSIT user=%s amount=%s ref=%s", user_id, confirmation.amount, provider_session_id)
        return tx

    async def _find_reference(self, db: AsyncSession, reference_type: str, reference_id: str) -> Transaction | None:
        return (await db.execute(
            select(Transaction).where(
                Transaction.reference_type == reference_type,
                Transaction.reference_id == reference_id,
            )
        )).scalar_one_or_none()

    # payouts

    async def start_onboarding(self, reader_id: str) -> str:
        payments = self._require_payments()
        async with self.session_factory() as db:
            reader = await get_reader_fresh(db, reader_id)
            account_id = reader.payout_account_id
            try:
                if not account_id:
                    account_id = await payments.create_payout_account(reader_id)
                    reader.payout_account_id = account_id
                    await db.commit()
                return await payments.onboarding_link(account_id)
            except PaymentError as exc:
                logger.warning("ONBOARD_FAIL reader=%s err=%s", reader_id, exc)
                raise PaymentFailed()

    async def refresh_onboarding(self, reader_id: str) -> bool:
        payments = self._require_payments()
        async with self.session_factory() as db:
            reader = await get_reader_fresh(db, reader_id)
            if not reader.payout_account_id:
                return False
            try:
                enabled = await payments.payouts_enabled(reader.payout_account_id)
            except PaymentError as exc:
                logger.warning("ONBOARD_STATUS_FAIL reader=%s err=%s", reader_id, exc)
                raise PaymentFailed()
            if enabled != bool(reader.payout_onboarded):
                reader.payout_onboarded = enabled
                await db.commit()
            return enabled

    async def payout(self, reader_id: str) -> Transaction:
        """Transfer the reader's pending payout to their payout account.

        The amount is claimed out of pending_payout before the transfer and
        restored if the provider rejects it. The attempt id is the provider's
        idempotency key and stays on the reader until the transfer is
        recorded, so a retry after a lost response or a failed write repeats
        the same attempt instead of paying a second time.
        """
        payments = self._require_payments()
        async with self.session_factory() as db:
            reader = await get_reader_fresh(db, reader_id)
            if not reader.payout_account_id or not reader.payout_onboarded:
                raise OnboardingIncomplete()
            account_id = reader.payout_account_id
            reader_user_id = reader.user_id
            pending = to_money(reader.pending_payout)
            attempt_id = reader.payout_attempt_id

            if attempt_id and reader.payout_in_flight:
                # claimed by an earlier request whose outcome was never recorded
                amount = to_money(reader.payout_attempt_amount)
                logger.info("PAYOUT_RESUME reader=%s attempt=%s amount=%s", reader_id, attempt_id, amount)
            else:
                if attempt_id:
                    amount = to_money(reader.payout_attempt_amount)
                    same_attempt = Reader.payout_attempt_id == attempt_id
                else:
                    if pending < self.min_payout:
                        raise PayoutTooSmall(f"Minimum payout is ${self.min_payout}")
                    attempt_id = new_id()
                    amount = pending
                    same_attempt = Reader.payout_attempt_id.is_(None)

                # matches nothing if an accrual or another payout got in first
                claimed = await db.execute(
                    update(Reader)
                    .where(
                        Reader.id == reader_id,
                        Reader.pending_payout == pending,
                        Reader.payout_in_flight.is_(False),
                        same_attempt,
                    )
                    .values(
                        pending_payout=func.round(Reader.pending_payout - amount, 2),
                        payout_attempt_id=attempt_id,
                        payout_attempt_amount=amount,
                        payout_in_flight=True,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if claimed.rowcount != 1:
                    raise PaymentFailed("Pending payout changed, please try again")

            try:
                transfer_id = await payments.transfer_payout(account_id, amount, f"payout-{attempt_id}")
            except PaymentError as exc:
                logger.warning(
                    "PAYOUT_TRANSFER_FAIL reader=%s amount=%s attempt=%s err=%s",
                    reader_id, amount, attempt_id, exc,
                )
                await db.execute(
                    update(Reader)
                    .where(
                        Reader.id == reader_id,
                        Reader.payout_attempt_id == attempt_id,
                        Reader.payout_in_flight.is_(True),
                    )
                    .values(pending_payout=func.round(Reader.pending_payout + amount, 2), payout_in_flight=False)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                raise PaymentFailed()

            try:
                tx = await self._record_payout(db, reader_id, reader_user_id, attempt_id, amount, transfer_id)
            except ServiceError:
                raise
            except Exception as exc:
                await db.rollback()
                logger.exception(
                    "PAYOUT_RECORD_FAIL reader=%s amount=%s attempt=%s transfer=%s",
                    reader_id, amount, attempt_id, transfer_id,
                )
                raise PayoutRecordFailure() from exc
        logger.info("PAYOUT reader=%s amount=%s transfer=%s", reader_id, amount, transfer_id)
        return tx

    async def _record_payout(
        self,
        db: AsyncSession,
        reader_id: str,
        reader_user_id: str,
        attempt_id: str,
        amount: Decimal,
        transfer_id: str,
    ) -> Transaction:
        cleared = await db.execute(
            update(Reader)
            .where(Reader.id == reader_id, Reader.payout_attempt_id == attempt_id)
            .values(payout_attempt_id=None, payout_attempt_amount=None, payout_in_flight=False)
            .execution_options(synchronize_session=False)
        )
        if cleared.rowcount != 1:
            # a concurrent retry of the same attempt recorded it first
            await db.rollback()
            existing = await self._find_reference(db, "stripe_transfer", transfer_id)
            if existing:
                return existing
            raise PaymentFailed("Payout state changed, please try again")
        tx = Transaction(
            user_id=reader_user_id,
            type="payout",
            amount=-amount,
            description="Reader payout via Stripe Connect",
            reference_id=transfer_id,
            reference_type="stripe_transfer",
        )
        db.add(tx)
        await db.commit()
        await db.refresh(tx)
        return tx
