"""
Agent Wallet - custodies one agent's capital and enforces its risk limits.

Positions move OPEN -> CLOSED exactly once. The wallet itself is either
ACTIVE or PAUSED; pausing blocks new trades but never blocks closing, so an
owner can always unwind and withdraw.
"""
from typing import Dict, List

from pydantic import BaseModel, Field

from vault.chain import Chain, Contract, non_reentrant, only_owner, to_address, transaction, view
from vault.errors import (
    DailyLossLimitReached,
    ExceedsMaxTradeSize,
    GlobalTradingPaused,
    InsufficientBalance,
    InvalidAmount,
    MarketNotWhitelisted,
    NotAuthorizedExecutor,
    NotPaused,
    Paused,
    PositionAlreadyClosed,
    PositionLimitReached,
    PositionNotFound,
    TransferFailed,
    VaultError,
)
from vault.logging import log
from vault.market_adapter import MarketAdapter
from vault.models import AgentConfig, PerformanceMetrics, Position, TradeDirection
from vault.permission_manager import PermissionManager


class WalletStorage(BaseModel):
    owner: str
    config: AgentConfig
    paused: bool = False
    positions: Dict[int, Position] = Field(default_factory=dict)
    open_position_ids: List[int] = Field(default_factory=list)
    next_position_id: int = 1
    metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)


class AgentWallet(Contract):
    """Per-agent custody contract driven by a single designated executor."""

    def __init__(
        self,
        chain: Chain,
        *,
        deployer: str,
        config: AgentConfig,
        permissions: PermissionManager,
        adapter: MarketAdapter,
        venue: str,
        accounting_day_seconds: int,
    ):
        self.storage = WalletStorage(
            owner=to_address(config.owner),
            config=config,
            metrics=PerformanceMetrics(daily_loss_window_start=chain.timestamp),
        )
        self.permissions = permissions
        self.adapter = adapter
        self.venue = to_address(venue)
        self.accounting_day_seconds = accounting_day_seconds
        super().__init__(chain, deployer=deployer)

    # ------------------------------------------------------------------
    # Capital
    # ------------------------------------------------------------------
    @transaction
    @only_owner
    def deposit_capital(self, *, sender: str, value: int) -> int:
        """Add native value to the wallet's available balance."""
        if value <= 0:
            raise InvalidAmount("Deposit must be positive")
        self._accept_value(sender, value)
        metrics = self.storage.metrics
        metrics.current_balance += value
        metrics.total_deposited += value
        self._emit("CapitalDeposited", agent=self.address, owner=self.owner, amount=value)
        log.info(f"Agent {self.address} received deposit of {value} wei")
        return metrics.current_balance

    @transaction
    @non_reentrant
    @only_owner
    def withdraw_capital(self, amount: int, *, sender: str) -> int:
        """Return unlocked capital to the owner. Allowed while paused."""
        metrics = self.storage.metrics
        if amount <= 0:
            raise InvalidAmount("Withdrawal must be positive")
        if amount > metrics.current_balance:
            raise InsufficientBalance(
                f"Requested {amount} but only {metrics.current_balance} is unlocked "
                f"({metrics.locked_capital} locked in open positions)"
            )
        metrics.current_balance -= amount
        metrics.total_withdrawn += amount
        self.chain.transfer(self.address, self.owner, amount)
        self._emit("CapitalWithdrawn", agent=self.address, owner=self.owner, amount=amount)
        log.info(f"Agent {self.address} withdrew {amount} wei to owner {self.owner}")
        return metrics.current_balance

    def receive(self, *, sender: str, value: int) -> None:
        if sender != self.adapter.address:
            raise TransferFailed("Agent wallets only accept capital through deposit_capital")

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------
    @transaction
    @non_reentrant
    def execute_trade(self, market_id: str, amount: int, direction: TradeDirection, *, sender: str) -> int:
        """Open a position through the market adapter; return the new position id."""
        sender = to_address(sender)
        direction = TradeDirection(direction)
        try:
            self._validate_trade(market_id, amount, sender)
        except VaultError as exc:
            log.warning(f"Agent {self.address} rejected trade on {market_id}: {exc.code} - {exc.message}")
            raise

        metrics = self.storage.metrics
        position_id = self.storage.next_position_id
        self.storage.next_position_id += 1
        metrics.current_balance -= amount
        metrics.locked_capital += amount
        metrics.total_trades += 1
        metrics.open_positions_count += 1

        receipt = self.adapter.open_position(
            self.venue, market_id, direction, sender=self.address, value=amount
        )

        position = Position(
            id=position_id,
            market_id=market_id,
            direction=direction,
            entry_amount=amount,
            entry_price=receipt.price,
            fee_paid=receipt.fee,
            adapter_ref=receipt.ref,
            opened_at=self.now,
        )
        self.storage.positions[position_id] = position
        self.storage.open_position_ids.append(position_id)
        self._emit(
            "TradeExecuted",
            agent=self.address,
            position_id=position_id,
            market_id=market_id,
            amount=amount,
            direction=direction.value,
            price=receipt.price,
            fee=receipt.fee,
            opened_at=position.opened_at,
        )
        log.bind(TRADE=True).info(
            f"Agent {self.address} opened position {position_id}: {direction.value} {amount} wei "
            f"on {market_id} @ {receipt.price:.4f}"
        )
        return position_id

    def _validate_trade(self, market_id: str, amount: int, sender: str) -> None:
        config = self.storage.config
        metrics = self.storage.metrics

        self._require_executor(sender)
        if self.storage.paused:
            raise Paused(f"Agent {self.address} is paused")
        if self.permissions.global_trading_paused:
            raise GlobalTradingPaused("Global trading is paused")
        if market_id not in config.whitelisted_markets or not self.permissions.is_market_active(market_id):
            raise MarketNotWhitelisted(f"Market {market_id} is not whitelisted for agent {self.address}")
        if amount <= 0:
            raise InvalidAmount("Trade amount must be positive")
        if amount > config.max_trade_size:
            raise ExceedsMaxTradeSize(f"Trade {amount} exceeds max trade size {config.max_trade_size}")
        if amount > metrics.current_balance:
            raise InsufficientBalance(f"Trade {amount} exceeds available balance {metrics.current_balance}")
        self._roll_loss_window()
        if metrics.daily_loss_accumulator >= config.daily_loss_limit:
            raise DailyLossLimitReached(
                f"Daily loss {metrics.daily_loss_accumulator} reached limit {config.daily_loss_limit}"
            )
        if metrics.open_positions_count >= config.max_open_positions:
            raise PositionLimitReached(f"Agent already holds {metrics.open_positions_count} open positions")

    @transaction
    @non_reentrant
    def close_position(self, position_id: int, *, sender: str) -> int:
        """Unwind an open position and book its realized PnL; return the payout."""
        sender = to_address(sender)
        self._require_executor(sender)
        position = self.storage.positions.get(position_id)
        if position is None:
            raise PositionNotFound(f"Position {position_id} not found on agent {self.address}")
        if not position.is_open:
            raise PositionAlreadyClosed(f"Position {position_id} already closed")

        metrics = self.storage.metrics
        position.is_open = False
        position.closed_at = self.now
        self.storage.open_position_ids.remove(position_id)
        metrics.open_positions_count -= 1
        metrics.locked_capital -= position.entry_amount

        payout = self.adapter.close_position(position.adapter_ref, sender=self.address)

        realized_pnl = payout - position.entry_amount
        position.payout = payout
        position.realized_pnl = realized_pnl
        metrics.current_balance += payout
        metrics.cumulative_realized_pnl += realized_pnl
        metrics.closed_positions_count += 1
        if realized_pnl > 0:
            metrics.winning_trades += 1
        elif realized_pnl < 0:
            metrics.losing_trades += 1

        self._roll_loss_window()
        if realized_pnl < 0:
            limit = self.storage.config.daily_loss_limit
            metrics.daily_loss_accumulator = min(metrics.daily_loss_accumulator - realized_pnl, limit)

        self._emit(
            "PositionClosed",
            agent=self.address,
            position_id=position_id,
            payout=payout,
            realized_pnl=realized_pnl,
            closed_at=position.closed_at,
        )
        log.bind(TRADE=True).info(
            f"Agent {self.address} closed position {position_id}: payout {payout} wei, pnl {realized_pnl} wei"
        )
        return payout

    def _require_executor(self, sender: str) -> None:
        executor = self.storage.config.executor
        if sender != executor or not self.permissions.is_executor_authorized(sender):
            raise NotAuthorizedExecutor(f"{sender} is not an authorized executor for agent {self.address}")

    def _roll_loss_window(self) -> None:
        # Fixed window: resets a full day after the last reset, not a trailing 24h sum
        metrics = self.storage.metrics
        now = self.now
        if now - metrics.daily_loss_window_start >= self.accounting_day_seconds:
            metrics.daily_loss_accumulator = 0
            metrics.daily_loss_window_start = now
            self._emit("DailyLossWindowReset", agent=self.address, window_start=now)

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------
    @transaction
    @only_owner
    def pause(self, *, sender: str) -> None:
        if self.storage.paused:
            raise Paused(f"Agent {self.address} is already paused")
        self.storage.paused = True
        self._emit("Paused", agent=self.address, account=to_address(sender))
        log.info(f"Agent {self.address} paused by owner")

    @transaction
    @only_owner
    def unpause(self, *, sender: str) -> None:
        if not self.storage.paused:
            raise NotPaused(f"Agent {self.address} is not paused")
        self.storage.paused = False
        self._emit("Unpaused", agent=self.address, account=to_address(sender))
        log.info(f"Agent {self.address} unpaused by owner")

    @property
    def paused(self) -> bool:
        return self.storage.paused

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def executor(self) -> str:
        return self.storage.config.executor

    @view
    def get_config(self) -> AgentConfig:
        return self.storage.config

    @view
    def get_open_positions(self) -> List[int]:
        return list(self.storage.open_position_ids)

    @view
    def get_position(self, position_id: int) -> Position:
        position = self.storage.positions.get(position_id)
        if position is None:
            raise PositionNotFound(f"Position {position_id} not found on agent {self.address}")
        return position.model_copy()

    @view
    def get_positions(self, include_closed: bool = True) -> List[Position]:
        return [
            position.model_copy()
            for position in self.storage.positions.values()
            if include_closed or position.is_open
        ]

    @view
    def get_performance_metrics(self) -> PerformanceMetrics:
        return self.storage.metrics.model_copy()
