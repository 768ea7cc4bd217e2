"""
Tests for the escrow lock state machine on the in-memory ledger.

Tests cover:
- create validation (timelock, amount, commitment, balance)
- claim / refund rules and their errors
- claim/refund exclusivity, including concurrent attempts
- checks-effects-interactions: re-entrant claim/refund from the transfer step
"""

import asyncio
from decimal import Decimal

import pytest

from swapengine import commitment as cm
from swapengine.errors import (
    AlreadyResolved,
    CommitmentMismatch,
    Expired,
    InvalidParameters,
    LedgerRejected,
    LockNotFound,
    MalformedCommitment,
    NotExpired,
)
from swapengine.ledgers.memory import InMemoryChain, InMemoryLedger
from swapengine.locks import LockStateMachine
from swapengine.models import ClaimLockTx, LockRef, LockState, RefundLockTx

DAY = 86400


def setup():
    chain = InMemoryChain("test")
    chain.fund("alice", Decimal(5))
    alice = LockStateMachine(InMemoryLedger(chain, "alice"))
    bob = LockStateMachine(InMemoryLedger(chain, "bob"))
    secret, commitment = cm.generate_pair()
    return chain, alice, bob, cm.to_hex(secret), cm.to_hex(commitment)


async def lock(chain, alice, commitment, seconds=DAY, amount=Decimal("1.5")):
    return await alice.create(commitment, amount, "bob", chain.now() + seconds)


# =============================================================================
# create
# =============================================================================

class TestCreate:
    def test_create_escrows_funds(self):
        async def scenario():
            chain, alice, _, _, commitment = setup()
            ref = await lock(chain, alice, commitment)
            view = await alice.status(ref)
            assert view.state is LockState.LOCKED
            assert view.commitment == commitment
            assert view.depositor == "alice"
            assert view.beneficiary == "bob"
            assert chain.balances["alice"] == Decimal("3.5")

        asyncio.run(scenario())

    def test_timelock_must_be_in_the_future(self):
        async def scenario():
            chain, alice, _, _, commitment = setup()
            with pytest.raises(InvalidParameters):
                await alice.create(commitment, Decimal(1), "bob", chain.now())
            assert chain.locks == {}

        asyncio.run(scenario())

    def test_amount_must_be_positive(self):
        async def scenario():
            chain, alice, _, _, commitment = setup()
            for amount in (Decimal(0), Decimal(-1)):
                with pytest.raises(InvalidParameters):
                    await alice.create(commitment, amount, "bob", chain.now() + DAY)

        asyncio.run(scenario())

    def test_malformed_commitment_is_rejected(self):
        async def scenario():
            chain, alice, _, _, _ = setup()
            with pytest.raises(MalformedCommitment):
                await alice.create("0xabcd", Decimal(1), "bob", chain.now() + DAY)

        asyncio.run(scenario())

    def test_insufficient_balance_is_rejected_by_ledger(self):
        async def scenario():
            chain, alice, _, _, commitment = setup()
            with pytest.raises(LedgerRejected):
                await alice.create(commitment, Decimal(50), "bob", chain.now() + DAY)

        asyncio.run(scenario())

    def test_unknown_lock(self):
        async def scenario():
            _, alice, _, _, _ = setup()
            with pytest.raises(LockNotFound):
                await alice.status(LockRef(ledger_id="test", lock_id="0xmissing"))

        asyncio.run(scenario())


# =============================================================================
# claim / refund
# =============================================================================

class TestClaimRefund:
    def test_claim_pays_beneficiary(self):
        async def scenario():
            chain, alice, bob, secret, commitment = setup()
            ref = await lock(chain, alice, commitment)
            result = await bob.claim(ref, secret)
            assert result.recipient == "bob"
            assert result.amount == Decimal("1.5")
            assert chain.balances["bob"] == Decimal("1.5")
            view = await bob.status(ref)
            assert view.state is LockState.CLAIMED
            assert view.revealed_secret == secret

        asyncio.run(scenario())

    def test_wrong_secret_leaves_lock_locked(self):
        async def scenario():
            chain, alice, bob, _, commitment = setup()
            ref = await lock(chain, alice, commitment)
            wrong = cm.to_hex(cm.generate_secret())
            with pytest.raises(CommitmentMismatch):
                await bob.claim(ref, wrong)
            # the ledger enforces the same rule without the pre-check
            with pytest.raises(CommitmentMismatch):
                chain.apply_claim(ClaimLockTx(lock_id=ref.lock_id, secret=wrong))
            assert (await bob.status(ref)).state is LockState.LOCKED
            assert chain.balances["bob"] == 0

        asyncio.run(scenario())

    def test_claim_after_timelock_is_expired(self):
        async def scenario():
            chain, alice, bob, secret, commitment = setup()
            ref = await lock(chain, alice, commitment)
            chain.advance(DAY)
            with pytest.raises(Expired):
                await bob.claim(ref, secret)

        asyncio.run(scenario())

    def test_refund_before_timelock_is_rejected(self):
        async def scenario():
            chain, alice, _, _, commitment = setup()
            ref = await lock(chain, alice, commitment)
            with pytest.raises(NotExpired):
                await alice.refund(ref)

        asyncio.run(scenario())

    def test_refund_returns_funds_to_depositor(self):
        async def scenario():
            chain, alice, bob, _, commitment = setup()
            ref = await lock(chain, alice, commitment)
            chain.advance(DAY)
            # anyone may trigger the refund, funds always go to the depositor
            result = await bob.refund(ref)
            assert result.recipient == "alice"
            assert chain.balances["alice"] == Decimal(5)
            assert (await alice.status(ref)).state is LockState.REFUNDED

        asyncio.run(scenario())


# =============================================================================
# exclusivity
# =============================================================================

class TestExclusivity:
    def test_refund_after_claim_is_already_resolved(self):
        async def scenario():
            chain, alice, bob, secret, commitment = setup()
            ref = await lock(chain, alice, commitment)
            await bob.claim(ref, secret)
            chain.advance(DAY)
            with pytest.raises(AlreadyResolved):
                await alice.refund(ref)
            with pytest.raises(AlreadyResolved):
                chain.apply_refund(RefundLockTx(lock_id=ref.lock_id))

        asyncio.run(scenario())

    def test_claim_after_refund_is_already_resolved(self):
        async def scenario():
            chain, alice, bob, secret, commitment = setup()
            ref = await lock(chain, alice, commitment)
            chain.advance(DAY)
            await alice.refund(ref)
            with pytest.raises(AlreadyResolved):
                await bob.claim(ref, secret)

        asyncio.run(scenario())

    def test_concurrent_claims_pay_out_once(self):
        async def scenario():
            chain, alice, bob, secret, commitment = setup()
            ref = await lock(chain, alice, commitment)
            results = await asyncio.gather(*(bob.claim(ref, secret) for _ in range(5)), return_exceptions=True)
            succeeded = [r for r in results if not isinstance(r, Exception)]
            failed = [r for r in results if isinstance(r, Exception)]
            assert len(succeeded) == 1
            assert all(isinstance(e, AlreadyResolved) for e in failed)
            assert chain.balances["bob"] == Decimal("1.5")

        asyncio.run(scenario())

    def test_concurrent_refunds_pay_out_once(self):
        async def scenario():
            chain, alice, _, _, commitment = setup()
            ref = await lock(chain, alice, commitment)
            chain.advance(DAY)
            results = await asyncio.gather(alice.refund(ref), alice.refund(ref), return_exceptions=True)
            assert sum(not isinstance(r, Exception) for r in results) == 1
            assert chain.balances["alice"] == Decimal(5)

        asyncio.run(scenario())


# =============================================================================
# re-entrancy
# =============================================================================

class TestReentrancy:
    def test_reentrant_claim_observes_claimed(self):
        async def scenario():
            chain, alice, bob, secret, commitment = setup()
            ref = await lock(chain, alice, commitment)
            seen = []

            def reenter(recipient, amount, lock_id):
                try:
                    chain.apply_claim(ClaimLockTx(lock_id=lock_id, secret=secret))
                    seen.append("paid twice")
                except AlreadyResolved:
                    seen.append(chain.locks[lock_id].state)

            chain.on_transfer = reenter
            await bob.claim(ref, secret)
            assert seen == [LockState.CLAIMED]
            assert chain.balances["bob"] == Decimal("1.5")

        asyncio.run(scenario())

    def test_reentrant_refund_observes_refunded(self):
        async def scenario():
            chain, alice, _, _, commitment = setup()
            ref = await lock(chain, alice, commitment)
            chain.advance(DAY)
            seen = []

            def reenter(recipient, amount, lock_id):
                try:
                    chain.apply_refund(RefundLockTx(lock_id=lock_id))
                    seen.append("paid twice")
                except AlreadyResolved:
                    seen.append(chain.locks[lock_id].state)

            chain.on_transfer = reenter
            await alice.refund(ref)
            assert seen == [LockState.REFUNDED]
            assert chain.balances["alice"] == Decimal(5)

        asyncio.run(scenario())
