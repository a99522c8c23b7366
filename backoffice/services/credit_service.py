from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.exceptions import InsufficientBalance, NotFoundError, ValidationError
from backoffice.models.credit import CreditBalance, CreditTransaction, CreditTransactionType
from backoffice.models.customer import Customer
from backoffice.utils.money import ZERO, to_money

logger = structlog.get_logger()


@dataclass
class CreditApplication:
    valid: bool
    applicable_amount: Decimal = ZERO
    remaining_balance: Decimal = ZERO
    error: Optional[str] = None


class CreditService:
    """
    Store-credit ledger.

    `credit_transactions` is append-only; `credit_balances` is a running total
    that only ever moves through conditional UPDATEs written in the same
    transaction as the ledger row. `spend` joins the caller's transaction so
    checkout can commit or roll back the debit with the order; the admin
    operations commit on their own.
    """

    def __init__(self, db: Session, tenant_id: Optional[str] = None):
        self.db = db
        self.tenant_id = tenant_id or settings.DEFAULT_TENANT_ID

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, customer_id: int) -> dict:
        """Current balance, read straight from `credit_balances`."""
        row = (
            self.db.query(CreditBalance.balance, CreditBalance.total_earned, CreditBalance.total_spent)
            .filter(CreditBalance.customer_id == customer_id)
            .first()
        )
        if row is None:
            result = {"balance": ZERO, "total_earned": ZERO, "total_spent": ZERO}
        else:
            result = {
                "balance": to_money(row.balance),
                "total_earned": to_money(row.total_earned),
                "total_spent": to_money(row.total_spent),
            }
        return result

    def validate_application(self, customer_id: int, requested_amount, cart_total) -> CreditApplication:
        requested = to_money(requested_amount)
        cart_total = to_money(cart_total)
        balance = self.get_balance(customer_id)["balance"]

        if requested <= 0:
            return CreditApplication(False, remaining_balance=balance, error="Credit amount must be positive")
        if cart_total <= 0:
            return CreditApplication(False, remaining_balance=balance, error="Cart total must be positive")
        if balance <= 0:
            return CreditApplication(False, remaining_balance=balance, error="No store credit available")

        applicable = min(requested, balance, cart_total)
        return CreditApplication(True, applicable_amount=applicable, remaining_balance=balance - applicable)

    def history(self, customer_id: int, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        return (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.customer_id == customer_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def stats(self) -> dict:
        """Tenant-wide totals for the admin dashboard."""
        totals = (
            self.db.query(
                func.coalesce(func.sum(CreditBalance.balance), 0),
                func.coalesce(func.sum(CreditBalance.total_earned), 0),
                func.coalesce(func.sum(CreditBalance.total_spent), 0),
            )
            .filter(CreditBalance.tenant_id == self.tenant_id)
            .one()
        )
        customers_with_balance = (
            self.db.query(func.count(CreditBalance.id))
            .filter(CreditBalance.tenant_id == self.tenant_id, CreditBalance.balance > 0)
            .scalar()
        )
        return {
            "outstanding_balance": to_money(totals[0]),
            "total_issued": to_money(totals[1]),
            "total_spent": to_money(totals[2]),
            "customers_with_balance": customers_with_balance or 0,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def issue(
        self,
        customer_id: int,
        amount,
        description: str,
        actor_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> CreditTransaction:
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")

        self._ensure_balance_row(customer_id)
        self._apply_delta(customer_id, amount, earned=amount)
        txn = self._append(
            customer_id,
            CreditTransactionType.GRANT,
            amount,
            description,
            actor_id=actor_id,
            expires_at=expires_at,
            reference_type=reference_type or "admin_action",
            reference_id=reference_id,
        )
        self.db.commit()
        self.db.refresh(txn)
        logger.info("credits_issued", customer_id=customer_id, amount=str(amount), actor_id=actor_id)
        return txn

    def spend(self, customer_id: int, amount, reference_id: Optional[str] = None, reference_type: str = "order") -> CreditTransaction:
        """Debit credits only if the balance covers them. Does not commit."""
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")

        result = self.db.execute(
            update(CreditBalance)
            .where(CreditBalance.customer_id == customer_id, CreditBalance.balance >= amount)
            .values(
                balance=CreditBalance.balance - amount,
                total_spent=CreditBalance.total_spent + amount,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            available = self._current_balance(customer_id)
            logger.warning(
                "credit_spend_rejected",
                customer_id=customer_id,
                requested=str(amount),
                available=str(available),
            )
            raise InsufficientBalance(available, amount)

        return self._append(
            customer_id,
            CreditTransactionType.SPEND,
            -amount,
            f"Applied to {reference_type} {reference_id}" if reference_id else "Applied to purchase",
            reference_type=reference_type,
            reference_id=reference_id,
        )

    def adjust(
        self,
        customer_id: int,
        signed_amount,
        description: str,
        actor_id: str,
        allow_negative: bool = False,
    ) -> CreditTransaction:
        """
        Administrative correction in either direction.

        A negative adjustment may only overdraw the balance when the caller
        asks for it and CREDIT_ALLOW_NEGATIVE_ADJUSTMENTS is switched on.
        """
        amount = to_money(signed_amount)
        if amount == 0:
            raise ValidationError("Adjustment amount cannot be zero")
        if allow_negative and not settings.CREDIT_ALLOW_NEGATIVE_ADJUSTMENTS:
            raise ValidationError("Negative credit balances are not enabled")

        self._ensure_balance_row(customer_id)
        if amount > 0:
            self._apply_delta(customer_id, amount)
        else:
            stmt = update(CreditBalance).where(CreditBalance.customer_id == customer_id)
            if not allow_negative:
                stmt = stmt.where(CreditBalance.balance >= -amount)
            result = self.db.execute(
                stmt.values(balance=CreditBalance.balance + amount, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                raise InsufficientBalance(self._current_balance(customer_id), -amount)

        txn = self._append(
            customer_id,
            CreditTransactionType.ADJUSTMENT,
            amount,
            description,
            actor_id=actor_id,
            reference_type="admin_action",
        )
        self.db.commit()
        self.db.refresh(txn)
        logger.info(
            "credits_adjusted",
            customer_id=customer_id,
            amount=str(amount),
            actor_id=actor_id,
            balance_after=str(txn.balance_after),
        )
        return txn

    def expire_due(self, now: Optional[datetime] = None) -> int:
        """
        Expire grants whose `expires_at` has passed.

        Each grant takes back at most what is still on the balance, so an
        expiry never drives the balance negative.
        """
        now = now or datetime.utcnow()
        grants = (
            self.db.query(CreditTransaction)
            .filter(
                CreditTransaction.tenant_id == self.tenant_id,
                CreditTransaction.transaction_type == CreditTransactionType.GRANT,
                CreditTransaction.expires_at.isnot(None),
                CreditTransaction.expires_at <= now,
                CreditTransaction.expired_at.is_(None),
            )
            .order_by(CreditTransaction.expires_at.asc(), CreditTransaction.id.asc())
            .all()
        )

        expired = 0
        for grant in grants:
            amount = min(to_money(grant.amount), self._current_balance(grant.customer_id))
            if amount > 0:
                result = self.db.execute(
                    update(CreditBalance)
                    .where(CreditBalance.customer_id == grant.customer_id, CreditBalance.balance >= amount)
                    .values(balance=CreditBalance.balance - amount, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Spent concurrently; pick it up on the next sweep
                    self.db.rollback()
                    continue
                self._append(
                    grant.customer_id,
                    CreditTransactionType.EXPIRATION,
                    -amount,
                    f"Expired credit from transaction {grant.id}",
                    reference_type="credit_transaction",
                    reference_id=str(grant.id),
                )
            grant.expired_at = now
            self.db.commit()
            expired += 1
            logger.info("credits_expired", customer_id=grant.customer_id, grant_id=grant.id, amount=str(amount))
        return expired

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_balance_row(self, customer_id: int) -> None:
        exists = self.db.query(CreditBalance.id).filter(CreditBalance.customer_id == customer_id).first()
        if exists:
            return
        customer = self.db.get(Customer, customer_id)
        if not customer:
            raise NotFoundError("Customer")
        try:
            with self.db.begin_nested():
                self.db.add(CreditBalance(tenant_id=customer.tenant_id, customer_id=customer_id))
        except IntegrityError:
            # Created concurrently
            logger.info("credit_balance_row_exists", customer_id=customer_id)

    def _apply_delta(self, customer_id: int, amount: Decimal, earned: Decimal = ZERO) -> None:
        self.db.execute(
            update(CreditBalance)
            .where(CreditBalance.customer_id == customer_id)
            .values(
                balance=CreditBalance.balance + amount,
                total_earned=CreditBalance.total_earned + earned,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    def _current_balance(self, customer_id: int) -> Decimal:
        value = self.db.query(CreditBalance.balance).filter(CreditBalance.customer_id == customer_id).scalar()
        return to_money(value or 0)

    def _append(
        self,
        customer_id: int,
        transaction_type: CreditTransactionType,
        amount: Decimal,
        description: str,
        actor_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> CreditTransaction:
        txn = CreditTransaction(
            tenant_id=self.tenant_id,
            customer_id=customer_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=self._current_balance(customer_id),
            description=description,
            actor_id=actor_id,
            expires_at=expires_at,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        self.db.add(txn)
        self.db.flush()
        return txn
