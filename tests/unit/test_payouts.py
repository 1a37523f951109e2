"""
test_payouts.py - Payout processor.

Disbursement eligibility, liquidity budgeting, failed-send recovery,
settlement conservation, and confirmation to finality against a fake node.
"""

import asyncio

import pytest
import pytest_asyncio

from poolcore.payouts import PAYOUT_FINALITY_CONFIRMATIONS, PayoutProcessor
from poolcore.states import PayoutStatus
from poolcore.units import COIN
from tests.conftest import ADDR_A, ADDR_B, ADDR_C

pytestmark = pytest.mark.asyncio

MIN_PAYOUT = 100 * COIN


@pytest_asyncio.fixture
async def processor(storage, node):
    node.balance = 1_000_000 * COIN
    return PayoutProcessor(storage, node, MIN_PAYOUT)


async def credit(storage, address, amount):
    participant, _ = await storage.participants.get_or_create(address)
    async with storage.transaction() as db:
        await db.execute(
            "UPDATE participants SET pending_balance = pending_balance + ? WHERE id = ?",
            (amount, participant["id"]),
        )
    return participant


async def balances(storage, participant_id):
    p = await storage.participants.get(participant_id)
    return p["pending_balance"], p["paid_balance"]


# ── Disbursement ────────────────────────────────────────────────────────────

class TestProcessPayouts:

    async def test_pays_eligible_participant(self, processor, storage, node):
        a = await credit(storage, ADDR_A, 2700 * COIN)

        sent = await processor.process_payouts()
        assert len(sent) == 1
        assert node.sent == [(ADDR_A, 2700 * COIN)]
        assert await balances(storage, a["id"]) == (0, 2700 * COIN)

        payout = await storage.payouts.get(sent[0]["id"])
        assert payout["status"] == PayoutStatus.SENT
        assert payout["txid"] == sent[0]["txid"]
        assert payout["amount"] == 2700 * COIN

    async def test_below_threshold_skipped(self, processor, storage, node):
        await credit(storage, ADDR_A, MIN_PAYOUT - 1)
        assert await processor.process_payouts() == []
        assert node.sent == []
        assert await storage.payouts.count() == 0

    async def test_threshold_is_inclusive(self, processor, storage, node):
        await credit(storage, ADDR_A, MIN_PAYOUT)
        assert len(await processor.process_payouts()) == 1

    async def test_disabled_participant_skipped(self, processor, storage, node):
        a = await credit(storage, ADDR_A, 500 * COIN)
        await storage.participants.set_payout_enabled(a["id"], False)
        assert await processor.process_payouts() == []

    async def test_missing_payout_address_skipped(self, processor, storage, node):
        a = await credit(storage, ADDR_A, 500 * COIN)
        await storage.participants.set_payout_address(a["id"], None)
        assert await processor.process_payouts() == []
        assert await storage.payouts.count() == 0

    async def test_invalid_address_skipped(self, processor, storage, node):
        await credit(storage, ADDR_A, 500 * COIN)
        b = await credit(storage, ADDR_B, 500 * COIN)
        node.invalid_addresses.add(ADDR_A)

        sent = await processor.process_payouts()
        assert [p["participant_id"] for p in sent] == [b["id"]]
        assert await storage.payouts.count() == 1

    async def test_liquidity_budgeted_across_pass(self, processor, storage, node):
        a = await credit(storage, ADDR_A, 600 * COIN)
        b = await credit(storage, ADDR_B, 600 * COIN)
        c = await credit(storage, ADDR_C, 300 * COIN)
        node.balance = 1000 * COIN

        sent = await processor.process_payouts()
        assert [p["participant_id"] for p in sent] == [a["id"], c["id"]]
        assert await balances(storage, b["id"]) == (600 * COIN, 0)

    async def test_balance_unavailable_skips_pass(self, processor, storage, node):
        await credit(storage, ADDR_A, 500 * COIN)
        node.unavailable = True
        assert await processor.process_payouts() == []
        assert await storage.payouts.count() == 0


class TestFailedSend:

    async def test_failed_send_keeps_balance_and_retries(self, processor, storage, node):
        a = await credit(storage, ADDR_A, 500 * COIN)
        node.fail_sends = True
        assert await processor.process_payouts() == []

        payouts = await storage.payouts.list_for_participant(a["id"])
        assert [p["status"] for p in payouts] == [PayoutStatus.FAILED]
        assert await balances(storage, a["id"]) == (500 * COIN, 0)

        node.fail_sends = False
        sent = await processor.process_payouts()
        assert len(sent) == 1
        statuses = [p["status"] for p in await storage.payouts.list_for_participant(a["id"])]
        assert statuses == [PayoutStatus.FAILED, PayoutStatus.SENT]
        assert await balances(storage, a["id"]) == (0, 500 * COIN)


class TestConservation:

    async def test_pending_plus_paid_constant(self, processor, storage, node):
        a = await credit(storage, ADDR_A, 123_456_789_012)
        before = sum(await balances(storage, a["id"]))
        await processor.process_payouts()
        assert sum(await balances(storage, a["id"])) == before

    async def test_balance_credited_during_pass_is_kept(self, processor, storage, node):
        a = await credit(storage, ADDR_A, 500 * COIN)
        original_send = node.send_to_address

        async def send_and_credit(address, amount, comment=""):
            txid = await original_send(address, amount, comment)
            await credit(storage, ADDR_A, 7)
            return txid

        node.send_to_address = send_and_credit
        await processor.process_payouts()
        assert await balances(storage, a["id"]) == (7, 500 * COIN)

    async def test_cancelled_pass_still_settles_sent_payout(self, processor, storage, node):
        a = await credit(storage, ADDR_A, 500 * COIN)
        original_send = node.send_to_address
        sending = asyncio.Event()

        async def slow_send(address, amount, comment=""):
            sending.set()
            await asyncio.sleep(0.05)
            return await original_send(address, amount, comment)

        node.send_to_address = slow_send
        task = asyncio.create_task(processor.process_payouts())
        await sending.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.2)
        assert node.sent == [(ADDR_A, 500 * COIN)]
        assert await balances(storage, a["id"]) == (0, 500 * COIN)
        assert await storage.payouts.count(PayoutStatus.SENT) == 1


# ── Confirmation ────────────────────────────────────────────────────────────

class TestConfirmPayouts:

    async def test_confirms_at_finality(self, processor, storage, node):
        await credit(storage, ADDR_A, 500 * COIN)
        (payout,) = await processor.process_payouts()

        node.transactions[payout["txid"]]["confirmations"] = PAYOUT_FINALITY_CONFIRMATIONS - 1
        assert await processor.confirm_payouts() == 0
        assert (await storage.payouts.get(payout["id"]))["status"] == PayoutStatus.SENT

        node.transactions[payout["txid"]]["confirmations"] = PAYOUT_FINALITY_CONFIRMATIONS
        assert await processor.confirm_payouts() == 1
        confirmed = await storage.payouts.get(payout["id"])
        assert confirmed["status"] == PayoutStatus.CONFIRMED
        assert confirmed["processed_at"] is not None
        assert await processor.confirm_payouts() == 0

    async def test_lookup_failure_leaves_payout_sent(self, processor, storage, node):
        await credit(storage, ADDR_A, 500 * COIN)
        (payout,) = await processor.process_payouts()
        del node.transactions[payout["txid"]]
        assert await processor.confirm_payouts() == 0
        assert (await storage.payouts.get(payout["id"]))["status"] == PayoutStatus.SENT

    async def test_run_cycle(self, processor, storage, node):
        a = await credit(storage, ADDR_A, 500 * COIN)
        await processor.run_cycle()
        assert await balances(storage, a["id"]) == (0, 500 * COIN)
        assert await storage.payouts.count(PayoutStatus.SENT) == 1
