"""
Mock prediction market - a logarithmic market scoring rule (LMSR) maker.

Every market id gets its own YES/NO share pool on first use. Buying spends
native value at the LMSR cost function, closing sells the shares back, so a
position opened and closed with no trades in between returns its stake while
trades by others in the meantime move the payout up or down.
"""
import math
from typing import Dict, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field

from vault.chain import Chain, non_reentrant, to_address, transaction, view
from vault.errors import InsufficientLiquidity, InvalidAmount, PositionAlreadyClosed, PositionNotFound
from vault.logging import log
from vault.models import MarketType, TradeDirection
from vault.venues.base import MarketVenue


FLOAT_GUARD = 1e-12


class LmsrPool(BaseModel):
    q_yes: float = 0.0
    q_no: float = 0.0
    volume: int = 0


class VenuePosition(BaseModel):
    ref: int
    trader: str
    market_id: str
    direction: TradeDirection
    shares: float
    cost: int
    is_open: bool = True
    payout: Optional[int] = None


class MockMarketStorage(BaseModel):
    owner: str
    liquidity: int
    pools: Dict[str, LmsrPool] = Field(default_factory=dict)
    positions: Dict[int, VenuePosition] = Field(default_factory=dict)
    next_ref: int = 1


def lmsr_cost(q_yes: float, q_no: float, liquidity: float) -> float:
    return liquidity * float(np.logaddexp(q_yes / liquidity, q_no / liquidity))


def lmsr_price(q_own: float, q_other: float, liquidity: float) -> float:
    return 1.0 / (1.0 + math.exp((q_other - q_own) / liquidity))


def shares_for_amount(q_own: float, q_other: float, amount: float, liquidity: float) -> float:
    """Shares of the `own` outcome bought by spending `amount`."""
    target = (lmsr_cost(q_own, q_other, liquidity) + amount) / liquidity
    other = q_other / liquidity
    new_q_own = liquidity * (target + math.log1p(-math.exp(other - target)))
    return new_q_own - q_own


class MockPredictionMarket(MarketVenue):
    """In-memory AMM venue used for development and tests."""

    market_type = MarketType.MOCK_AMM

    def __init__(self, chain: Chain, *, deployer: str, liquidity: int):
        if liquidity <= 0:
            raise ValueError("liquidity must be positive")
        self.storage = MockMarketStorage(owner=to_address(deployer), liquidity=int(liquidity))
        super().__init__(chain, deployer=deployer)

    def _pool(self, market_id: str) -> LmsrPool:
        return self.storage.pools.setdefault(market_id, LmsrPool())

    @staticmethod
    def _sides(pool: LmsrPool, direction: TradeDirection) -> Tuple[float, float]:
        if direction.is_buy:
            return pool.q_yes, pool.q_no
        return pool.q_no, pool.q_yes

    @transaction
    @non_reentrant
    def open(self, market_id: str, direction: TradeDirection, *, sender: str, value: int) -> Tuple[int, float]:
        if value <= 0:
            raise InvalidAmount("Stake must be positive")
        sender = to_address(sender)
        direction = TradeDirection(direction)
        self._accept_value(sender, value)

        pool = self._pool(market_id)
        q_own, q_other = self._sides(pool, direction)
        liquidity = float(self.storage.liquidity)
        shares = shares_for_amount(q_own, q_other, float(value), liquidity)
        if direction.is_buy:
            pool.q_yes += shares
        else:
            pool.q_no += shares
        pool.volume += value

        ref = self.storage.next_ref
        self.storage.next_ref += 1
        self.storage.positions[ref] = VenuePosition(
            ref=ref,
            trader=sender,
            market_id=market_id,
            direction=direction,
            shares=shares,
            cost=value,
        )
        avg_price = value / shares if shares > 0 else 0.0
        self._emit(
            "MarketTraded",
            ref=ref,
            trader=sender,
            market_id=market_id,
            direction=direction.value,
            cost=value,
            shares=shares,
        )
        return ref, avg_price

    @transaction
    @non_reentrant
    def close(self, ref: int, *, sender: str) -> int:
        sender = to_address(sender)
        position = self.storage.positions.get(ref)
        if position is None or position.trader != sender:
            raise PositionNotFound(f"Venue position {ref} not found for {sender}")
        if not position.is_open:
            raise PositionAlreadyClosed(f"Venue position {ref} already closed")

        pool = self._pool(position.market_id)
        liquidity = float(self.storage.liquidity)
        before = lmsr_cost(pool.q_yes, pool.q_no, liquidity)
        if position.direction.is_buy:
            pool.q_yes -= position.shares
        else:
            pool.q_no -= position.shares
        after = lmsr_cost(pool.q_yes, pool.q_no, liquidity)
        # Round in favour of the pool so float error never pays out more than was paid in
        payout = max(0, int(math.floor(before - after - abs(before) * FLOAT_GUARD)))

        if payout > self.native_balance:
            raise InsufficientLiquidity(
                f"Venue cannot pay {payout} for position {ref}; holds {self.native_balance}"
            )

        position.is_open = False
        position.payout = payout
        self._emit("MarketSettled", ref=ref, trader=sender, payout=payout)
        self.chain.transfer(self.address, sender, payout)
        return payout

    @view
    def price(self, market_id: str, direction: TradeDirection) -> float:
        pool = self.storage.pools.get(market_id, LmsrPool())
        q_own, q_other = self._sides(pool, TradeDirection(direction))
        return lmsr_price(q_own, q_other, float(self.storage.liquidity))

    @view
    def get_position(self, ref: int) -> Optional[VenuePosition]:
        position = self.storage.positions.get(ref)
        return position.model_copy() if position else None

    def receive(self, *, sender: str, value: int) -> None:
        log.info(f"Mock market {self.address} funded with {value} wei by {sender}")
        self._emit("Funded", sender=sender, amount=value)
