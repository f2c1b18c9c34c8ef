"""
Data models for the Agent Vault.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TradeDirection(str, Enum):
    """Side of a prediction-market position."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def is_buy(self) -> bool:
        return self is TradeDirection.BUY


class RiskProfile(str, Enum):
    """Preset risk levels for agent creation."""
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


class MarketType(str, Enum):
    """Venue families the market adapter can route to."""
    POLYMARKET = "POLYMARKET"
    MOCK_AMM = "MOCK_AMM"


class MarketConstraints(BaseModel):
    """System-wide bounds every agent configuration must satisfy."""
    min_trade_size: int
    max_trade_size: int
    min_daily_loss_limit: int
    max_daily_loss_limit: int


class MarketRecord(BaseModel):
    """Whitelisted market metadata held by the permission manager."""
    market_id: str
    name: str = ""
    region: str = ""
    is_active: bool = False
    registered_at: Optional[int] = None


class AgentConfig(BaseModel):
    """Immutable risk configuration of one agent wallet."""
    model_config = ConfigDict(frozen=True)

    owner: str
    executor: str
    max_trade_size: int
    daily_loss_limit: int
    max_open_positions: int
    whitelisted_markets: List[str]
    risk_profile: Optional[RiskProfile] = None
    name: str = ""


class Position(BaseModel):
    """Capital committed by a wallet to one market and direction."""
    id: int
    market_id: str
    direction: TradeDirection
    entry_amount: int
    entry_price: float
    fee_paid: int
    adapter_ref: int
    is_open: bool = True
    opened_at: int
    closed_at: Optional[int] = None
    payout: Optional[int] = None
    realized_pnl: Optional[int] = None


class PerformanceMetrics(BaseModel):
    """Cached performance and risk counters of one agent wallet."""
    total_trades: int = 0
    open_positions_count: int = 0
    closed_positions_count: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    current_balance: int = 0  # available (unlocked) capital
    locked_capital: int = 0
    total_deposited: int = 0
    total_withdrawn: int = 0
    cumulative_realized_pnl: int = 0
    daily_loss_accumulator: int = 0
    daily_loss_window_start: int = 0

    @property
    def total_value(self) -> int:
        return self.current_balance + self.locked_capital

    @property
    def win_rate(self) -> float:
        if not self.closed_positions_count:
            return 0.0
        return self.winning_trades / self.closed_positions_count


class VenueRecord(BaseModel):
    """Market venue registered with the adapter."""
    address: str
    market_type: MarketType
    is_active: bool = True
    added_at: int


class AdapterPosition(BaseModel):
    """Adapter-side bookkeeping for a position placed on a venue."""
    ref: int
    venue: str
    venue_ref: int
    trader: str
    market_id: str
    direction: TradeDirection
    stake: int
    fee: int
    net_amount: int
    price: float
    is_open: bool = True
    payout: Optional[int] = None


class OpenReceipt(BaseModel):
    """Result of routing a new position through the adapter."""
    ref: int
    price: float
    net_amount: int
    fee: int


class EventLog(BaseModel):
    """Event emitted by a contract during a committed transaction."""
    event: str
    address: str
    args: Dict[str, Any] = Field(default_factory=dict)
    block_number: int
    log_index: int
    timestamp: int
