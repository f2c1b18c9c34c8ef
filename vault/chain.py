"""
Chain runtime - accounts, native balances, contract registry and atomic transactions.

Contracts in this package never touch balances or emit events directly; they
go through the `Chain` so that every call frame commits or reverts as a unit.
"""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from functools import wraps
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar

from pydantic import BaseModel
from web3 import Web3

from vault.errors import ContractNotFound, NotOwner, ReentrantCall, TransferFailed, VaultError
from vault.logging import log
from vault.models import EventLog

C = TypeVar("C", bound="Contract")


def market_id(name: str) -> str:
    """Return the bytes32 market identifier for a human-readable key (keccak256)."""
    return Web3.to_hex(Web3.keccak(text=name))


def to_address(value: str) -> str:
    """Normalise an address to its EIP-55 checksummed form."""
    return Web3.to_checksum_address(value)


def _derive_address(*parts: str) -> str:
    digest = Web3.keccak(text=":".join(parts))
    return Web3.to_checksum_address(Web3.to_hex(digest[-20:]))


class _Frame:
    """Undo journal for one call frame.

    Holds the value each balance, nonce and contract storage had before this
    frame first wrote to it, so a revert only touches what the frame changed.
    """

    __slots__ = ("balances", "nonces", "storages", "deployed", "event_count")

    def __init__(self, event_count: int):
        self.balances: Dict[str, Optional[int]] = {}
        self.nonces: Dict[str, Optional[int]] = {}
        self.storages: Dict[str, BaseModel] = {}
        self.deployed: List[str] = []
        self.event_count = event_count

    def merge_into(self, parent: "_Frame") -> None:
        # Entries the parent already holds are older and win.
        for address, value in self.balances.items():
            parent.balances.setdefault(address, value)
        for address, value in self.nonces.items():
            parent.nonces.setdefault(address, value)
        for address, storage in self.storages.items():
            parent.storages.setdefault(address, storage)
        parent.deployed.extend(self.deployed)


class Chain:
    """In-process execution environment with all-or-nothing call frames."""

    def __init__(self, genesis_timestamp: Optional[int] = None):
        self._balances: Dict[str, int] = {}
        self._nonces: Dict[str, int] = {}
        self._contracts: Dict[str, Contract] = {}
        self._labels: Dict[str, str] = {}
        self._events: List[EventLog] = []
        self._frozen_clock = genesis_timestamp is not None
        self._genesis = int(genesis_timestamp) if genesis_timestamp is not None else int(time.time())
        self._time_offset = 0
        self._lock = threading.RLock()
        self._frames: List[_Frame] = []
        self._tx_event_start = 0
        self.block_number = 0

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------
    @property
    def timestamp(self) -> int:
        base = self._genesis if self._frozen_clock else int(time.time())
        return base + self._time_offset

    def advance_time(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("time only moves forward")
        with self._lock:
            self._time_offset += int(seconds)
            return self.timestamp


    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def create_account(self, label: str, balance: int = 0, address: Optional[str] = None) -> str:
        """Create (or look up) an externally owned account.

        The address is derived from `label` unless one is given, e.g. the
        address of a signing key held by an off-chain operator.
        """
        address = to_address(address) if address else _derive_address("account", label)
        with self._lock:
            self._labels.setdefault(address, label)
            if balance or address not in self._balances:
                self._set_balance(address, self._balances.get(address, 0) + int(balance))
        return address

    def fund(self, address: str, amount: int) -> int:
        if amount < 0:
            raise ValueError("funding amount must be non-negative")
        address = to_address(address)
        with self._lock:
            self._set_balance(address, self._balances.get(address, 0) + int(amount))
            return self._balances[address]

    def balance_of(self, address: str) -> int:
        return self._balances.get(to_address(address), 0)

    def label_of(self, address: str) -> Optional[str]:
        return self._labels.get(to_address(address))

    def _set_balance(self, address: str, value: int) -> None:
        if self._frames and address not in self._frames[-1].balances:
            self._frames[-1].balances[address] = self._balances.get(address)
        self._balances[address] = value

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------
    def deploy(self, contract: "Contract", deployer: str) -> str:
        with self._lock:
            nonce = self._nonces.get(deployer, 0)
            address = _derive_address("contract", deployer, str(nonce))
            if self._frames:
                frame = self._frames[-1]
                frame.nonces.setdefault(deployer, self._nonces.get(deployer))
                frame.deployed.append(address)
            self._nonces[deployer] = nonce + 1
            self._contracts[address] = contract
            self._set_balance(address, self._balances.get(address, 0))
        log.debug(f"Deployed {type(contract).__name__} at {address} (deployer={deployer}, nonce={nonce})")
        return address

    def is_contract(self, address: str) -> bool:
        return to_address(address) in self._contracts

    def get_contract(self, address: str, kind: Optional[Type[C]] = None) -> C:
        contract = self._contracts.get(to_address(address))
        if contract is None:
            raise ContractNotFound(f"No contract deployed at {address}")
        if kind is not None and not isinstance(contract, kind):
            raise ContractNotFound(f"Contract at {address} is not a {kind.__name__}")
        return contract

    # ------------------------------------------------------------------
    # Value transfer
    # ------------------------------------------------------------------
    def move(self, sender: str, recipient: str, amount: int) -> None:
        """Move native value without invoking any recipient hook."""
        if amount < 0:
            raise TransferFailed("transfer amount must be non-negative")
        sender, recipient = to_address(sender), to_address(recipient)
        available = self._balances.get(sender, 0)
        if available < amount:
            raise TransferFailed(
                f"Insufficient native balance at {sender}: required {amount}, available {available}"
            )
        self._set_balance(sender, available - amount)
        self._set_balance(recipient, self._balances.get(recipient, 0) + amount)

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """Send native value; contract recipients may reject it in `receive`."""
        target = self._contracts.get(to_address(recipient))
        with self.atomic(target):
            self.move(sender, recipient, amount)
            if target is None:
                return
            try:
                target.receive(sender=to_address(sender), value=amount)
            except VaultError as exc:
                raise TransferFailed(f"{recipient} rejected transfer: {exc.message}") from exc

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @property
    def in_transaction(self) -> bool:
        return bool(self._frames)

    def touch(self, contract: "Contract") -> None:
        """Journal `contract`'s storage before the current frame mutates it."""
        if not self._frames:
            return
        frame = self._frames[-1]
        address = contract.address
        if address in frame.storages or address in frame.deployed:
            return
        frame.storages[address] = contract.storage.model_copy(deep=True)

    def _revert(self, frame: _Frame) -> None:
        for address, value in frame.balances.items():
            if value is None:
                self._balances.pop(address, None)
            else:
                self._balances[address] = value
        for address, value in frame.nonces.items():
            if value is None:
                self._nonces.pop(address, None)
            else:
                self._nonces[address] = value
        for address, storage in frame.storages.items():
            if address in self._contracts:
                self._contracts[address].storage = storage
        for address in frame.deployed:
            self._contracts.pop(address, None)
        del self._events[frame.event_count:]

    @contextmanager
    def atomic(self, *contracts: Optional["Contract"]) -> Iterator[None]:
        """Run a call frame; any exception restores the state seen on entry.

        Only state written inside the frame is journaled. Contracts whose
        storage the frame mutates are passed in (or `touch`ed) on entry.
        """
        with self._lock:
            outermost = not self._frames
            if outermost:
                self._tx_event_start = len(self._events)
            frame = _Frame(len(self._events))
            self._frames.append(frame)
            for contract in contracts:
                if contract is not None:
                    self.touch(contract)
            try:
                yield
            except Exception as exc:
                self._frames.pop()
                self._revert(frame)
                if outermost:
                    log.debug(f"Transaction reverted at block {self.block_number + 1}: {exc!r}")
                raise
            else:
                self._frames.pop()
                if outermost:
                    self.block_number += 1
                    log.debug(f"Transaction committed in block {self.block_number}")
                else:
                    frame.merge_into(self._frames[-1])

    @contextmanager
    def reading(self) -> Iterator[None]:
        """Hold the chain lock so views see only committed state."""
        with self._lock:
            yield

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def emit(self, address: str, event: str, **args: Any) -> EventLog:
        pending = 1 if self._frames else 0
        entry = EventLog(
            event=event,
            address=address,
            args=args,
            block_number=self.block_number + pending,
            log_index=len(self._events) - self._tx_event_start if self._frames else 0,
            timestamp=self.timestamp,
        )
        self._events.append(entry)
        return entry

    @property
    def events(self) -> List[EventLog]:
        return list(self._events)

    def get_events(
        self,
        event: Optional[str] = None,
        address: Optional[str] = None,
        from_index: int = 0,
    ) -> List[EventLog]:
        address = to_address(address) if address else None
        with self._lock:
            return [
                entry
                for entry in self._events[from_index:]
                if (event is None or entry.event == event)
                and (address is None or entry.address == address)
            ]


# ----------------------------------------------------------------------
# Contract base and modifiers
# ----------------------------------------------------------------------

def transaction(func):
    """Run the entry point inside its own atomic call frame."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        with self.chain.atomic(self):
            return func(self, *args, **kwargs)

    return wrapper


def view(func):
    """Read committed state under the chain lock."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        with self.chain.reading():
            return func(self, *args, **kwargs)

    return wrapper


def non_reentrant(func):
    """Reject calls that re-enter the contract while a guarded call is running."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        if self._entered:
            raise ReentrantCall(f"Reentrant call to {type(self).__name__}.{func.__name__}")
        self._entered = True
        try:
            return func(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper


def only_owner(func):
    """Restrict the entry point to the contract owner."""

    @wraps(func)
    def wrapper(self, *args, sender: str, **kwargs):
        if to_address(sender) != self.owner:
            raise NotOwner(f"{sender} is not the owner of {type(self).__name__} {self.address}")
        return func(self, *args, sender=sender, **kwargs)

    return wrapper


class Contract:
    """Base class for contracts living on a `Chain`.

    Subclasses keep every mutable field in `self.storage` (a pydantic model) so
    the chain can journal and restore it. Storage is only written from
    `transaction` entry points and from `receive`, which the chain journals on
    entry; references to other contracts and configuration fixed at
    construction may live on the instance.
    """

    storage: BaseModel

    def __init__(self, chain: Chain, *, deployer: str):
        self.chain = chain
        self.deployer = to_address(deployer)
        self._entered = False
        self.address = chain.deploy(self, self.deployer)

    @property
    def owner(self) -> str:
        return self.storage.owner

    @property
    def now(self) -> int:
        return self.chain.timestamp

    @property
    def native_balance(self) -> int:
        return self.chain.balance_of(self.address)

    def receive(self, *, sender: str, value: int) -> None:
        raise TransferFailed(f"{type(self).__name__} does not accept native transfers")

    def _accept_value(self, sender: str, value: int) -> None:
        if value:
            self.chain.move(sender, self.address, value)

    def _emit(self, event: str, **args: Any) -> EventLog:
        return self.chain.emit(self.address, event, **args)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.address}>"
