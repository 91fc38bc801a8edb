"""Client billing: fee-rule lookup and balance-moving postings.

Rule precedence is explicit rather than insertion-ordered::

    client + condition  >  client general  >  global + condition  >  global general

A rule without a condition (NULL or empty) is "general"; a rule without a
client_id is "global". When no rule applies, charging is a no-op that is
only reported in the log.

Balances move through ``balance = balance +/- amount`` updates and the
``balance_after`` snapshot of each transaction is read back from the
account row after that update, never computed from a cached value.
``charge`` and ``create_transaction`` do not commit: workflows call them
inside their own transaction so a fee and the status change it belongs to
land together.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime

from sqlalchemy import func, or_, select, update

from .. import models
from ..errors import NotFound, ValidationFailed
from .audit import add_operation_log
from .base import Service, atomic

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

TRANSACTION_TYPES = {"RECHARGE", "DEDUCTION", "REFUND", "ADJUSTMENT"}


def to_money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def _rule_tier(rule: models.FinanceRule) -> int:
    specific = 0 if rule.condition else 1
    scoped = 0 if rule.client_id else 2
    return scoped + specific


class BillingLedger(Service):
    # ---------- rules ----------
    def resolve_rule(self, client_id: str, fee_type: str, condition: str | None = None) -> models.FinanceRule | None:
        condition = condition or None
        stmt = (
            select(models.FinanceRule)
            .where(models.FinanceRule.type == fee_type)
            .where(
                or_(
                    models.FinanceRule.client_id == client_id,
                    models.FinanceRule.client_id.is_(None),
                    models.FinanceRule.client_id == "",
                )
            )
        )
        candidates = [
            r
            for r in self.db.scalars(stmt).all()
            if not r.condition or (condition is not None and r.condition == condition)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda r: (_rule_tier(r), r.id))

    def calculate_fee(self, client_id: str, fee_type: str, quantity: int | Decimal, condition: str | None = None) -> Decimal:
        rule = self.resolve_rule(client_id, fee_type, condition)
        if not rule:
            logger.warning("No billing rule found for %s (condition=%s, client=%s)", fee_type, condition, client_id)
            return Decimal("0.00")
        return to_money(Decimal(rule.price) * Decimal(quantity))

    def list_rules(self) -> list[models.FinanceRule]:
        return list(self.db.scalars(select(models.FinanceRule).order_by(models.FinanceRule.type, models.FinanceRule.id)).all())

    def upsert_rule(self, rule_id: int | None = None, **fields) -> models.FinanceRule:
        if "condition" in fields:
            fields["condition"] = fields["condition"] or None
        if "client_id" in fields:
            fields["client_id"] = fields["client_id"] or None
        with atomic(self.db):
            if rule_id:
                rule = self.db.get(models.FinanceRule, rule_id)
                if not rule:
                    raise NotFound("finance rule not found")
                for key, value in fields.items():
                    setattr(rule, key, value)
            else:
                rule = models.FinanceRule(**fields)
                self.db.add(rule)
                self.db.flush()
            add_operation_log(self.db, "finance_rules", rule.id, "UPSERT", self.user, fields)
        return rule

    def delete_rule(self, rule_id: int) -> None:
        rule = self.db.get(models.FinanceRule, rule_id)
        if not rule:
            raise NotFound("finance rule not found")
        with atomic(self.db):
            self.db.delete(rule)
            add_operation_log(self.db, "finance_rules", rule_id, "DELETE", self.user, {"name": rule.name})

    # ---------- postings ----------
    def _ensure_account(self, client_id: str) -> models.FinanceAccount:
        account = self.db.scalar(select(models.FinanceAccount).where(models.FinanceAccount.client_id == client_id))
        if not account:
            account = models.FinanceAccount(client_id=client_id, balance=Decimal("0"))
            self.db.add(account)
            self.db.flush()
        return account

    def create_transaction(
        self,
        client_id: str,
        tx_type: str,
        amount,
        description: str | None = None,
        reference_id: str | None = None,
    ) -> models.FinanceTransaction:
        if tx_type not in TRANSACTION_TYPES:
            raise ValidationFailed(f"unknown transaction type {tx_type}")
        amount = to_money(amount)
        if tx_type == "DEDUCTION":
            delta = -amount
        elif tx_type == "ADJUSTMENT":
            delta = amount
        else:
            delta = abs(amount)

        self._ensure_account(client_id)
        self.db.execute(
            update(models.FinanceAccount)
            .where(models.FinanceAccount.client_id == client_id)
            .values(balance=models.FinanceAccount.balance + delta, updated_at=datetime.now())
        )
        balance_after = self.db.scalar(
            select(models.FinanceAccount.balance).where(models.FinanceAccount.client_id == client_id)
        )
        txn = models.FinanceTransaction(
            client_id=client_id,
            type=tx_type,
            amount=abs(amount) if tx_type != "ADJUSTMENT" else amount,
            balance_after=to_money(balance_after),
            description=description,
            reference_id=reference_id,
            operator=self.user.username,
        )
        self.db.add(txn)
        self.db.flush()
        logger.info("%s %s %s for %s, balance now %s", tx_type, amount, description or "", client_id, txn.balance_after)
        return txn

    def charge(
        self,
        client_id: str,
        fee_type: str,
        quantity: int,
        reference_id: str | None = None,
        condition: str | None = None,
    ) -> models.FinanceTransaction | None:
        rule = self.resolve_rule(client_id, fee_type, condition)
        if not rule:
            logger.warning("No billing rule found for %s (condition=%s, client=%s)", fee_type, condition, client_id)
            return None
        amount = to_money(Decimal(rule.price) * Decimal(quantity))
        if amount <= 0:
            return None
        return self.create_transaction(client_id, "DEDUCTION", amount, f"{rule.name} x{quantity}", reference_id)

    def top_up(self, client_id: str, amount) -> models.FinanceTransaction:
        client_id = self.client_scope(client_id)
        if not client_id:
            raise ValidationFailed("请选择客户")
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationFailed("充值金额必须大于 0")
        with atomic(self.db):
            txn = self.create_transaction(client_id, "RECHARGE", amount, "Manual Top Up")
        return txn

    # ---------- reporting ----------
    def dashboard(self) -> dict:
        wallets_stmt = select(models.FinanceAccount).order_by(models.FinanceAccount.client_id)
        tx_stmt = (
            select(models.FinanceTransaction)
            .order_by(models.FinanceTransaction.created_at.desc(), models.FinanceTransaction.id.desc())
            .limit(100)
        )
        if self.user.is_client:
            wallets_stmt = wallets_stmt.where(models.FinanceAccount.client_id == self.user.username)
            tx_stmt = tx_stmt.where(models.FinanceTransaction.client_id == self.user.username)
        wallets = list(self.db.scalars(wallets_stmt).all())
        transactions = list(self.db.scalars(tx_stmt).all())

        stats = {"total_revenue": Decimal("0.00"), "total_debtors": 0, "total_balance": Decimal("0.00")}
        if self.user.role == "admin":
            stats["total_balance"] = to_money(sum((w.balance or 0 for w in wallets), Decimal("0")))
            stats["total_debtors"] = sum(1 for w in wallets if (w.balance or 0) < 0)
            revenue = self.db.scalar(
                select(func.coalesce(func.sum(models.FinanceTransaction.amount), 0)).where(
                    models.FinanceTransaction.type == "RECHARGE"
                )
            )
            stats["total_revenue"] = to_money(revenue)
        return {"wallets": wallets, "transactions": transactions, "stats": stats}
