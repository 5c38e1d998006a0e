#  Generation Broker - Accounting Engine Tests
#
#  Debit/credit/adjust/refund/topup arithmetic, ledger coupling, version
#  bumps, auto-deactivation and concurrent debits.
#
#  Depends on: broker/services/accounting.py, broker/services/ledger.py
#  Used by:    pytest

import asyncio
import dataclasses
from decimal import Decimal

import pytest

from broker.cache import user_key
from broker.exceptions import (
    InsufficientFundsError,
    NotFoundError,
    OptimisticConflictError,
    ValidationError,
)
from broker.models.enums import TransactionKind
from broker.services.accounting import TransactionMeta
from broker.services.accounts import AccountStore
from broker.services.ledger import TransactionFilter


async def _entries(ledger, user_id):
    entries, _ = await ledger.find(TransactionFilter(user_id=user_id, limit=100))
    return list(reversed(entries))  # oldest first


class TestDebit:
    async def test_simple_debit(self, accounting, ledger, make_account):
        account = await make_account(balance=100)
        after = await accounting.debit(account.id, 10, "charge")

        assert after.balance == Decimal("90")
        assert after.total_consumed == Decimal("10")
        [entry] = await _entries(ledger, account.id)
        assert entry.amount == Decimal("-10")
        assert entry.balance_before == Decimal("100")
        assert entry.balance_after == Decimal("90")
        assert entry.kind == TransactionKind.USER_CONSUME
        assert ledger.verify(entry)

    async def test_debit_into_credit_line_keeps_account_active(self, accounting, make_account):
        account = await make_account(balance=5, credit_limit=50)
        after = await accounting.debit(account.id, 10, "charge")

        assert after.balance == Decimal("-5")
        assert after.total_consumed == Decimal("10")
        assert after.is_active is True
        assert after.balance + after.credit_limit >= 0

    async def test_insufficient_funds_leaves_no_trace(self, accounting, accounts, ledger, make_account):
        account = await make_account(balance=5, credit_limit=4)
        with pytest.raises(InsufficientFundsError):
            await accounting.debit(account.id, 10, "too much")

        fresh = await accounts.get(account.id)
        assert fresh.balance == Decimal("5")
        assert fresh.version == account.version
        assert await _entries(ledger, account.id) == []

    async def test_exact_available_is_allowed(self, accounting, make_account):
        account = await make_account(balance=5, credit_limit=5)
        after = await accounting.debit(account.id, 10, "all in")
        assert after.available == Decimal("0")

    @pytest.mark.parametrize("amount", [0, -1, "0", "abc", None, "NaN"])
    async def test_non_positive_amount_rejected(self, accounting, make_account, amount):
        account = await make_account(balance=5)
        with pytest.raises(ValidationError):
            await accounting.debit(account.id, amount, "bad")

    async def test_unknown_user(self, accounting):
        with pytest.raises(NotFoundError):
            await accounting.debit(9999, 1, "ghost")

    async def test_debit_invalidates_cache(self, accounting, accounts, fake_redis, make_account):
        account = await make_account(balance=100)
        await accounts.get_cached(account.id)
        assert await fake_redis.exists(user_key(account.id))

        await accounting.debit(account.id, 1, "charge")
        assert not await fake_redis.exists(user_key(account.id))


class TestCreditFamily:
    async def test_admin_negative_adjustment_to_zero_deactivates(self, accounting, ledger, make_account):
        account = await make_account(balance=10)
        after = await accounting.adjust(account.id, -10, "clawback")

        assert after.balance == Decimal("0")
        assert after.is_active is False
        assert after.deactivated_at is not None
        [entry] = await _entries(ledger, account.id)
        assert entry.amount == Decimal("-10")
        assert entry.balance_before == Decimal("10")
        assert entry.balance_after == Decimal("0")
        assert entry.kind == TransactionKind.ADMIN_ADJUSTMENT

    async def test_negative_adjustment_counts_as_consumption(self, accounting, make_account):
        account = await make_account(balance=50)
        after = await accounting.adjust(account.id, -20, "fee")
        assert after.total_consumed == Decimal("20")

    async def test_adjustment_ignores_available_funds(self, accounting, make_account):
        account = await make_account(balance=1)
        after = await accounting.adjust(account.id, -5, "correction")
        assert after.balance == Decimal("-4")

    async def test_zero_adjustment_rejected(self, accounting, make_account):
        account = await make_account(balance=1)
        with pytest.raises(ValidationError):
            await accounting.adjust(account.id, 0, "noop")

    async def test_malformed_adjustment_rejected(self, accounting, make_account):
        account = await make_account(balance=1)
        with pytest.raises(ValidationError, match="Not a valid amount"):
            await accounting.adjust(account.id, "12,5", "typo")

    async def test_adjust_records_operator(self, accounting, ledger, make_account):
        account = await make_account(balance=1)
        meta = TransactionMeta(
            operator="root", operator_id=7, kind=TransactionKind.ADMIN_ADJUSTMENT,
            ip_address="10.0.0.1", device_info="curl/8",
        )
        await accounting.adjust(account.id, 3, "bonus", meta)
        [entry] = await _entries(ledger, account.id)
        assert (entry.operator, entry.operator_id) == ("root", 7)
        assert (entry.ip_address, entry.device_info) == ("10.0.0.1", "curl/8")

    async def test_refund_reduces_total_consumed(self, accounting, ledger, make_account):
        account = await make_account(balance=100)
        await accounting.debit(account.id, 10, "charge")
        after = await accounting.refund(account.id, 10, "Refund for task 1 failure")

        assert after.balance == Decimal("100")
        assert after.total_consumed == Decimal("0")
        kinds = [e.kind for e in await _entries(ledger, account.id)]
        assert kinds == [TransactionKind.USER_CONSUME, TransactionKind.USER_REFUND]

    async def test_refund_without_prior_consumption_goes_negative(self, accounting, make_account):
        account = await make_account(balance=10)
        after = await accounting.refund(account.id, 3, "goodwill")
        assert after.total_consumed == Decimal("-3")

    async def test_topup_kinds(self, accounting, ledger, make_account):
        account = await make_account(balance=0)
        await accounting.topup(account.id, 20, "order 1")
        await accounting.topup(
            account.id, 5, "order 2",
            TransactionMeta(operator="root", operator_id=1), manual=True,
        )
        kinds = [e.kind for e in await _entries(ledger, account.id)]
        assert kinds == [TransactionKind.USER_TOPUP, TransactionKind.MANUAL_TOPUP]

    async def test_credit_then_debit_restores_balance(self, accounting, ledger, make_account):
        account = await make_account(balance=42)
        await accounting.credit(account.id, 8, "in")
        after = await accounting.debit(account.id, 8, "out")
        assert after.balance == Decimal("42")
        assert len(await _entries(ledger, account.id)) == 2


class TestInvariants:
    async def test_balance_equals_ledger_sum_and_versions_increase(self, accounting, ledger, make_account):
        account = await make_account(balance=0)
        versions = [account.version]
        ops = [
            accounting.topup(account.id, "100.12345678", "t"),
            accounting.debit(account.id, "0.1", "d"),
            accounting.adjust(account.id, "-3.5", "a"),
            accounting.refund(account.id, "0.1", "r"),
            accounting.credit(account.id, 1, "c"),
        ]
        for op in ops:
            versions.append((await op).version)

        entries = await _entries(ledger, account.id)
        final = entries[-1].balance_after
        assert final == sum((e.amount for e in entries), Decimal("0"))
        assert all(e.balance_after == e.balance_before + e.amount for e in entries)
        assert all(ledger.verify(e) for e in entries)
        assert versions == sorted(set(versions))


class TestConcurrency:
    async def test_two_concurrent_debits_only_one_succeeds(self, accounting, ledger, make_account):
        account = await make_account(balance=100)
        results = await asyncio.gather(
            accounting.debit(account.id, 60, "first"),
            accounting.debit(account.id, 60, "second"),
            return_exceptions=True,
        )
        ok = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(ok) == 1
        assert ok[0].balance == Decimal("40")
        assert len(errors) == 1
        assert isinstance(errors[0], (InsufficientFundsError, OptimisticConflictError))
        assert len(await _entries(ledger, account.id)) == 1

    async def test_stale_version_raises_conflict_and_rolls_back(
        self, accounting, accounts, ledger, make_account, monkeypatch,
    ):
        account = await make_account(balance=100)
        real_load = AccountStore.load_in_tx

        async def stale_load(conn, user_id):
            current = await real_load(conn, user_id)
            return dataclasses.replace(current, version=current.version - 1)

        monkeypatch.setattr(AccountStore, "load_in_tx", staticmethod(stale_load))

        with pytest.raises(OptimisticConflictError, match="modified concurrently"):
            await accounting.debit(account.id, 10, "charge")

        monkeypatch.undo()
        after = await accounts.get(account.id)
        assert after.balance == Decimal("100")
        assert after.version == account.version
        assert await _entries(ledger, account.id) == []
