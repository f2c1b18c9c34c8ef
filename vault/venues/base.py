"""
Market venue interface consumed by the market adapter.
"""
from abc import ABC, abstractmethod
from typing import Tuple

from vault.chain import Contract
from vault.models import MarketType, TradeDirection


class MarketVenue(Contract, ABC):
    """A prediction-market venue the adapter can route positions to.

    Implementations take the stake as native value on `open` and pay the
    payout to the caller on `close`.
    """

    market_type: MarketType

    @abstractmethod
    def open(self, market_id: str, direction: TradeDirection, *, sender: str, value: int) -> Tuple[int, float]:
        """Place a position; return the venue reference and the average fill price."""
        ...

    @abstractmethod
    def close(self, ref: int, *, sender: str) -> int:
        """Unwind a position and transfer the payout to `sender`; return the payout."""
        ...

    @abstractmethod
    def price(self, market_id: str, direction: TradeDirection) -> float:
        """Current marginal price of one share on the given side, in [0, 1]."""
        ...
