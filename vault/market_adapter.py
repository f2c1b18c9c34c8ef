"""
Market Adapter - single entry point through which agent wallets reach market venues.

The adapter takes a protocol fee on every opened position, forwards the net
stake to the venue and remembers which wallet owns each venue position so
only that wallet can unwind it.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from vault.chain import Chain, Contract, non_reentrant, only_owner, to_address, transaction, view
from vault.errors import (
    ContractNotFound,
    InvalidAmount,
    InvalidRange,
    MarketInactive,
    MarketNotFound,
    PositionAlreadyClosed,
    PositionNotFound,
    TransferFailed,
    VaultError,
    VenueCallFailed,
)
from vault.logging import log
from vault.models import AdapterPosition, MarketType, OpenReceipt, TradeDirection, VenueRecord
from vault.venues.base import MarketVenue

BPS_DENOMINATOR = 10_000


class AdapterStorage(BaseModel):
    owner: str
    fee_collector: str
    fee_bps: int
    venues: Dict[str, VenueRecord] = Field(default_factory=dict)
    positions: Dict[int, AdapterPosition] = Field(default_factory=dict)
    next_ref: int = 1
    total_fees: int = 0


class MarketAdapter(Contract):
    """Routes positions from agent wallets to registered market venues."""

    def __init__(self, chain: Chain, *, deployer: str, fee_collector: str, fee_bps: int = 0):
        if not 0 <= fee_bps <= BPS_DENOMINATOR:
            raise InvalidRange(f"Protocol fee {fee_bps} bps outside [0, {BPS_DENOMINATOR}]")
        self.storage = AdapterStorage(
            owner=to_address(deployer),
            fee_collector=to_address(fee_collector),
            fee_bps=int(fee_bps),
        )
        super().__init__(chain, deployer=deployer)

    # ------------------------------------------------------------------
    # Venue administration
    # ------------------------------------------------------------------
    @transaction
    @only_owner
    def add_market(self, venue: str, market_type: MarketType, *, sender: str) -> VenueRecord:
        """Register (or re-activate) a venue under a market type tag."""
        venue = to_address(venue)
        try:
            self.chain.get_contract(venue, MarketVenue)
        except ContractNotFound as exc:
            raise MarketNotFound(exc.message) from exc

        record = VenueRecord(
            address=venue,
            market_type=MarketType(market_type),
            is_active=True,
            added_at=self.now,
        )
        self.storage.venues[venue] = record
        self._emit("VenueAdded", venue=venue, market_type=record.market_type.value)
        log.info(f"Market adapter {self.address} registered {record.market_type.value} venue {venue}")
        return record.model_copy()

    @transaction
    @only_owner
    def set_market_active(self, venue: str, active: bool, *, sender: str) -> None:
        record = self._require_venue(venue)
        record.is_active = bool(active)
        self._emit("VenueStatusChanged", venue=record.address, is_active=record.is_active)
        log.info(f"Venue {record.address} {'activated' if active else 'deactivated'}")

    @transaction
    @only_owner
    def set_fee_collector(self, fee_collector: str, *, sender: str) -> None:
        self.storage.fee_collector = to_address(fee_collector)
        self._emit("FeeCollectorUpdated", fee_collector=self.storage.fee_collector)

    @transaction
    @only_owner
    def set_protocol_fee(self, fee_bps: int, *, sender: str) -> None:
        if not 0 <= fee_bps <= BPS_DENOMINATOR:
            raise InvalidRange(f"Protocol fee {fee_bps} bps outside [0, {BPS_DENOMINATOR}]")
        self.storage.fee_bps = int(fee_bps)
        self._emit("ProtocolFeeUpdated", fee_bps=self.storage.fee_bps)

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------
    @transaction
    @non_reentrant
    def open_position(
        self,
        venue: str,
        market_id: str,
        direction: TradeDirection,
        *,
        sender: str,
        value: int,
    ) -> OpenReceipt:
        """Take the fee from `value`, forward the rest to the venue and record the position."""
        sender = to_address(sender)
        direction = TradeDirection(direction)
        record = self._require_venue(venue)
        if not record.is_active:
            raise MarketInactive(f"Venue {record.address} is inactive")
        if value <= 0:
            raise InvalidAmount("Position stake must be positive")

        self._accept_value(sender, value)
        fee = value * self.storage.fee_bps // BPS_DENOMINATOR
        net_amount = value - fee
        if fee:
            self.chain.transfer(self.address, self.storage.fee_collector, fee)
            self.storage.total_fees += fee
            self._emit("ProtocolFeeCollected", trader=sender, fee=fee, fee_collector=self.storage.fee_collector)

        target = self.chain.get_contract(record.address, MarketVenue)
        try:
            venue_ref, price = target.open(market_id, direction, sender=self.address, value=net_amount)
        except VaultError as exc:
            raise VenueCallFailed(f"Venue {record.address} rejected open: {exc.message}") from exc

        ref = self.storage.next_ref
        self.storage.next_ref += 1
        self.storage.positions[ref] = AdapterPosition(
            ref=ref,
            venue=record.address,
            venue_ref=venue_ref,
            trader=sender,
            market_id=market_id,
            direction=direction,
            stake=value,
            fee=fee,
            net_amount=net_amount,
            price=price,
        )
        self._emit(
            "PositionOpened",
            ref=ref,
            trader=sender,
            venue=record.address,
            market_id=market_id,
            direction=direction.value,
            stake=value,
            fee=fee,
            price=price,
        )
        return OpenReceipt(ref=ref, price=price, net_amount=net_amount, fee=fee)

    @transaction
    @non_reentrant
    def close_position(self, ref: int, *, sender: str) -> int:
        """Unwind a position on its venue and forward the payout to the wallet that opened it."""
        sender = to_address(sender)
        position = self.storage.positions.get(ref)
        if position is None or position.trader != sender:
            raise PositionNotFound(f"Adapter position {ref} not found for {sender}")
        if not position.is_open:
            raise PositionAlreadyClosed(f"Adapter position {ref} already closed")
        # Closing stays possible on an inactive venue so capital is never trapped
        self._require_venue(position.venue)

        position.is_open = False
        target = self.chain.get_contract(position.venue, MarketVenue)
        balance_before = self.native_balance
        try:
            payout = target.close(position.venue_ref, sender=self.address)
        except VaultError as exc:
            raise VenueCallFailed(f"Venue {position.venue} rejected close: {exc.message}") from exc
        received = self.native_balance - balance_before
        if received != payout:
            raise VenueCallFailed(
                f"Venue {position.venue} reported payout {payout} but transferred {received}"
            )

        position.payout = payout
        self._emit("PositionSettled", ref=ref, trader=sender, venue=position.venue, payout=payout)
        if payout:
            self.chain.transfer(self.address, sender, payout)
        return payout

    def receive(self, *, sender: str, value: int) -> None:
        if sender not in self.storage.venues:
            raise TransferFailed(f"Market adapter only accepts payouts from registered venues, not {sender}")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @view
    def get_venue(self, venue: str) -> Optional[VenueRecord]:
        record = self.storage.venues.get(to_address(venue))
        return record.model_copy() if record else None

    @view
    def get_venues(self) -> List[VenueRecord]:
        return [record.model_copy() for record in self.storage.venues.values()]

    @view
    def get_position(self, ref: int) -> Optional[AdapterPosition]:
        position = self.storage.positions.get(ref)
        return position.model_copy() if position else None

    @property
    def fee_bps(self) -> int:
        return self.storage.fee_bps

    @property
    def fee_collector(self) -> str:
        return self.storage.fee_collector

    @property
    def total_fees(self) -> int:
        return self.storage.total_fees

    def _require_venue(self, venue: str) -> VenueRecord:
        record = self.storage.venues.get(to_address(venue))
        if record is None:
            raise MarketNotFound(f"Venue {venue} is not registered with the adapter")
        return record
