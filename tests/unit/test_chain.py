"""
Unit tests for the chain runtime.
"""
from typing import ClassVar

import pytest
from pydantic import BaseModel
from web3 import Web3

from vault.chain import Chain, Contract, market_id, non_reentrant, only_owner, to_address, transaction, view
from vault.config import ETHER
from vault.errors import ContractNotFound, InvalidAmount, NotOwner, ReentrantCall, TransferFailed


class CounterStorage(BaseModel):
    owner: str
    value: int = 0


class Counter(Contract):
    def __init__(self, chain, *, deployer):
        self.storage = CounterStorage(owner=to_address(deployer))
        super().__init__(chain, deployer=deployer)

    @transaction
    def increment(self, *, sender):
        self.storage.value += 1
        self._emit("Incremented", value=self.storage.value)
        return self.storage.value

    @transaction
    def increment_then_fail(self, *, sender):
        self.storage.value += 1
        self._emit("Incremented", value=self.storage.value)
        raise InvalidAmount("boom")

    @transaction
    @only_owner
    def reset(self, *, sender):
        self.storage.value = 0

    @transaction
    @non_reentrant
    def call_back(self, callback, *, sender):
        self.storage.value += 1
        return callback()

    @view
    def value(self):
        return self.storage.value


@pytest.fixture
def admin(chain):
    return chain.create_account("admin", balance=5 * ETHER)


@pytest.fixture
def counter(chain, admin):
    return Counter(chain, deployer=admin)


class TestAddresses:
    """Identifier and address helpers."""

    def test_market_id_is_keccak_of_key(self):
        expected = Web3.to_hex(Web3.keccak(text="NIGERIA_ELECTION_2027"))
        assert market_id("NIGERIA_ELECTION_2027") == expected
        assert len(expected) == 66

    def test_create_account_is_idempotent_and_checksummed(self, chain):
        first = chain.create_account("alice", balance=ETHER)
        second = chain.create_account("alice")
        assert first == second
        assert Web3.is_checksum_address(first)
        assert chain.balance_of(first) == ETHER
        assert chain.label_of(first) == "alice"

    def test_contract_addresses_differ_per_deployment(self, chain, admin):
        one = Counter(chain, deployer=admin)
        two = Counter(chain, deployer=admin)
        assert one.address != two.address
        assert chain.is_contract(one.address)
        assert chain.get_contract(two.address, Counter) is two

    def test_get_contract_unknown_address(self, chain, admin):
        with pytest.raises(ContractNotFound):
            chain.get_contract(admin)


class TestTransfers:
    """Native value movement."""

    def test_transfer_between_accounts(self, chain, admin):
        bob = chain.create_account("bob")
        chain.transfer(admin, bob, ETHER)
        assert chain.balance_of(bob) == ETHER
        assert chain.balance_of(admin) == 4 * ETHER

    def test_transfer_insufficient_balance(self, chain, admin):
        bob = chain.create_account("bob")
        with pytest.raises(TransferFailed):
            chain.transfer(bob, admin, 1)
        assert chain.balance_of(admin) == 5 * ETHER

    def test_contract_rejects_plain_transfer_by_default(self, chain, admin, counter):
        with pytest.raises(TransferFailed):
            chain.transfer(admin, counter.address, ETHER)
        assert counter.native_balance == 0
        assert chain.balance_of(admin) == 5 * ETHER


class TestTransactions:
    """Atomic call frames, block numbers and events."""

    def test_commit_increments_block_and_emits(self, chain, admin, counter):
        start = chain.block_number
        assert counter.increment(sender=admin) == 1
        assert chain.block_number == start + 1
        event = chain.get_events("Incremented")[-1]
        assert event.args == {"value": 1}
        assert event.block_number == chain.block_number
        assert event.address == counter.address

    def test_failure_restores_storage_and_events(self, chain, admin, counter):
        counter.increment(sender=admin)
        events_before = len(chain.events)
        block_before = chain.block_number

        with pytest.raises(InvalidAmount):
            counter.increment_then_fail(sender=admin)

        assert counter.value() == 1
        assert len(chain.events) == events_before
        assert chain.block_number == block_before

    def test_inner_failure_caught_by_outer_frame(self, chain, admin, counter):
        with chain.atomic():
            counter.increment(sender=admin)
            with pytest.raises(InvalidAmount):
                counter.increment_then_fail(sender=admin)
        assert counter.value() == 1

    def test_outer_failure_reverts_committed_inner_frames(self, chain, admin, counter):
        bob = chain.create_account("bob")
        with pytest.raises(RuntimeError):
            with chain.atomic():
                counter.increment(sender=admin)
                chain.transfer(admin, bob, ETHER)
                raise RuntimeError("abort")
        assert counter.value() == 0
        assert chain.balance_of(bob) == 0

    def test_contract_deployed_in_reverted_frame_disappears(self, chain, admin):
        with pytest.raises(RuntimeError):
            with chain.atomic():
                ghost = Counter(chain, deployer=admin)
                raise RuntimeError("abort")
        assert not chain.is_contract(ghost.address)

    def test_only_owner(self, chain, admin, counter):
        counter.increment(sender=admin)
        intruder = chain.create_account("intruder")
        with pytest.raises(NotOwner):
            counter.reset(sender=intruder)
        counter.reset(sender=admin)
        assert counter.value() == 0

    def test_non_reentrant_blocks_nested_call(self, chain, admin, counter):
        with pytest.raises(ReentrantCall):
            counter.call_back(lambda: counter.call_back(lambda: None, sender=admin), sender=admin)
        assert counter.value() == 0
        # The guard is released after the failed call
        counter.call_back(lambda: None, sender=admin)
        assert counter.value() == 1


class TestClock:
    """Frozen block clock."""

    def test_advance_time(self):
        chain = Chain(genesis_timestamp=1_000)
        assert chain.timestamp == 1_000
        assert chain.advance_time(60) == 1_060

    def test_time_never_moves_backwards(self, chain):
        with pytest.raises(ValueError):
            chain.advance_time(-1)


class TrackedStorage(CounterStorage):
    copies: ClassVar[int] = 0

    def model_copy(self, *, update=None, deep=False):
        type(self).copies += 1
        return super().model_copy(update=update, deep=deep)


class Bystander(Counter):
    def __init__(self, chain, *, deployer):
        super().__init__(chain, deployer=deployer)
        self.storage = TrackedStorage(owner=to_address(deployer))


class TestJournal:
    """Call frames journal only the state they write."""

    @pytest.fixture
    def bystanders(self, chain, admin):
        TrackedStorage.copies = 0
        return [Bystander(chain, deployer=admin) for _ in range(25)]

    def test_untouched_contracts_are_not_copied(self, chain, admin, counter, bystanders):
        counter.increment(sender=admin)
        with pytest.raises(InvalidAmount):
            counter.increment_then_fail(sender=admin)
        chain.transfer(admin, chain.create_account("bob"), ETHER)
        assert TrackedStorage.copies == 0

    def test_revert_keeps_untouched_storage_objects(self, chain, admin, counter, bystanders):
        bystanders[0].increment(sender=admin)
        storage = bystanders[0].storage
        with pytest.raises(InvalidAmount):
            counter.increment_then_fail(sender=admin)
        assert bystanders[0].storage is storage
        assert bystanders[0].value() == 1

    def test_touched_contract_copied_once_per_frame(self, chain, admin, bystanders):
        bystanders[0].increment(sender=admin)
        assert TrackedStorage.copies == 1

    def test_inner_frame_merged_then_outer_revert(self, chain, admin, counter):
        counter.increment(sender=admin)
        bob = chain.create_account("bob")
        with pytest.raises(RuntimeError):
            with chain.atomic():
                counter.increment(sender=admin)
                counter.increment(sender=admin)
                chain.transfer(admin, bob, ETHER)
                raise RuntimeError("abort")
        assert counter.value() == 1
        assert chain.balance_of(admin) == 5 * ETHER
        assert chain.balance_of(bob) == 0

    def test_account_created_in_reverted_frame(self, chain):
        with pytest.raises(RuntimeError):
            with chain.atomic():
                carol = chain.create_account("carol", balance=ETHER)
                raise RuntimeError("abort")
        assert chain.balance_of(carol) == 0
        assert chain.create_account("carol", balance=2 * ETHER) == carol
        assert chain.balance_of(carol) == 2 * ETHER

    def test_account_with_explicit_address(self, chain):
        address = "0x" + "ab" * 20
        account = chain.create_account("operator", balance=ETHER, address=address)
        assert account == to_address(address)
        assert chain.balance_of(address) == ETHER
        assert chain.label_of(account) == "operator"
