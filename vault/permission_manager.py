"""
Permission Manager - system-wide market whitelist, executor registry, global
risk bounds and the global trading circuit breaker.

Every agent wallet holds a reference to one manager and consults it on each
trade, so changes take effect for all wallets on their next call.
"""
from typing import Dict, List, Sequence

from pydantic import BaseModel, Field

from vault.chain import Chain, Contract, only_owner, to_address, transaction, view
from vault.errors import ArrayLengthMismatch, GlobalTradingPaused, InvalidRange, MarketNotFound, NotPaused
from vault.logging import log
from vault.models import MarketConstraints, MarketRecord


class PermissionStorage(BaseModel):
    owner: str
    constraints: MarketConstraints
    markets: Dict[str, MarketRecord] = Field(default_factory=dict)
    executors: Dict[str, bool] = Field(default_factory=dict)
    global_trading_paused: bool = False


class PermissionManager(Contract):
    """Global authority consulted by agent wallets and the agent factory."""

    def __init__(self, chain: Chain, *, deployer: str, constraints: MarketConstraints):
        _check_ranges(
            constraints.min_trade_size,
            constraints.max_trade_size,
            constraints.min_daily_loss_limit,
            constraints.max_daily_loss_limit,
        )
        self.storage = PermissionStorage(owner=to_address(deployer), constraints=constraints.model_copy())
        super().__init__(chain, deployer=deployer)

    # ------------------------------------------------------------------
    # Markets
    # ------------------------------------------------------------------
    @transaction
    @only_owner
    def register_market(self, market_id: str, name: str, region: str, *, sender: str) -> MarketRecord:
        """Create or update a market record and mark it active."""
        return self._register(market_id, name, region)

    @transaction
    @only_owner
    def batch_register_markets(
        self,
        market_ids: Sequence[str],
        names: Sequence[str],
        regions: Sequence[str],
        *,
        sender: str,
    ) -> List[MarketRecord]:
        if not len(market_ids) == len(names) == len(regions):
            raise ArrayLengthMismatch(
                f"Batch lengths differ: {len(market_ids)} ids, {len(names)} names, {len(regions)} regions"
            )
        return [
            self._register(market_id, name, region)
            for market_id, name, region in zip(market_ids, names, regions)
        ]

    def _register(self, market_id: str, name: str, region: str) -> MarketRecord:
        existing = self.storage.markets.get(market_id)
        registered_at = existing.registered_at if existing else self.now
        record = MarketRecord(
            market_id=market_id,
            name=name,
            region=region,
            is_active=True,
            registered_at=registered_at,
        )
        self.storage.markets[market_id] = record
        self._emit("MarketRegistered", market_id=market_id, name=name, region=region)
        log.info(f"Market registered: {name} ({region}) {market_id}")
        return record.model_copy()

    @transaction
    @only_owner
    def set_market_active(self, market_id: str, active: bool, *, sender: str) -> None:
        record = self.storage.markets.get(market_id)
        if record is None:
            raise MarketNotFound(f"Market {market_id} is not registered")
        record.is_active = bool(active)
        self._emit("MarketStatusChanged", market_id=market_id, is_active=record.is_active)
        log.info(f"Market {record.name or market_id} {'activated' if active else 'deactivated'}")

    @view
    def get_market(self, market_id: str) -> MarketRecord:
        """Return the market record, or an inactive zero record if unknown."""
        record = self.storage.markets.get(market_id)
        if record is None:
            return MarketRecord(market_id=market_id)
        return record.model_copy()

    @view
    def get_registered_markets(self) -> List[MarketRecord]:
        return [record.model_copy() for record in self.storage.markets.values()]

    def is_market_active(self, market_id: str) -> bool:
        record = self.storage.markets.get(market_id)
        return bool(record and record.is_active)

    # ------------------------------------------------------------------
    # Executors
    # ------------------------------------------------------------------
    @transaction
    @only_owner
    def authorize_executor(self, executor: str, authorized: bool, *, sender: str) -> None:
        executor = to_address(executor)
        self.storage.executors[executor] = bool(authorized)
        self._emit("ExecutorAuthorized", executor=executor, authorized=bool(authorized))
        log.info(f"Executor {executor} {'authorized' if authorized else 'revoked'}")

    def is_executor_authorized(self, executor: str) -> bool:
        return self.storage.executors.get(to_address(executor), False)

    # ------------------------------------------------------------------
    # Global constraints
    # ------------------------------------------------------------------
    @transaction
    @only_owner
    def update_global_constraints(
        self,
        min_trade_size: int,
        max_trade_size: int,
        min_daily_loss_limit: int,
        max_daily_loss_limit: int,
        *,
        sender: str,
    ) -> MarketConstraints:
        _check_ranges(min_trade_size, max_trade_size, min_daily_loss_limit, max_daily_loss_limit)
        self.storage.constraints = MarketConstraints(
            min_trade_size=min_trade_size,
            max_trade_size=max_trade_size,
            min_daily_loss_limit=min_daily_loss_limit,
            max_daily_loss_limit=max_daily_loss_limit,
        )
        self._emit("GlobalConstraintsUpdated", **self.storage.constraints.model_dump())
        log.info(f"Global constraints updated: {self.storage.constraints.model_dump()}")
        return self.storage.constraints.model_copy()

    @view
    def get_global_constraints(self) -> MarketConstraints:
        return self.storage.constraints.model_copy()

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------
    @transaction
    @only_owner
    def pause_global_trading(self, *, sender: str) -> None:
        if self.storage.global_trading_paused:
            raise GlobalTradingPaused("Global trading is already paused")
        self.storage.global_trading_paused = True
        self._emit("GlobalTradingPaused")
        log.warning("Global trading paused - all agent wallets blocked from opening positions")

    @transaction
    @only_owner
    def resume_global_trading(self, *, sender: str) -> None:
        if not self.storage.global_trading_paused:
            raise NotPaused("Global trading is not paused")
        self.storage.global_trading_paused = False
        self._emit("GlobalTradingResumed")
        log.info("Global trading resumed")

    @property
    def global_trading_paused(self) -> bool:
        return self.storage.global_trading_paused


def _check_ranges(min_trade: int, max_trade: int, min_loss: int, max_loss: int) -> None:
    if min(min_trade, max_trade, min_loss, max_loss) < 0:
        raise InvalidRange("Constraint amounts must be non-negative")
    if min_trade > max_trade:
        raise InvalidRange(f"min trade size {min_trade} exceeds max trade size {max_trade}")
    if min_loss > max_loss:
        raise InvalidRange(f"min daily loss limit {min_loss} exceeds max daily loss limit {max_loss}")
