"""
Event indexer - rebuilds the dashboard mirror from the chain's event log.

The mirror is read-only and never authoritative; it is reconstructed from
events alone so it can be replayed from scratch at any time.
"""
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from vault.chain import Chain, to_address
from vault.config import settings
from vault.logging import log
from vault.models import EventLog
from vault.redis_client import RedisClient


class AgentRecord(BaseModel):
    address: str
    name: str = ""
    owner: str
    executor: str
    max_trade_size: int
    daily_loss_limit: int
    max_open_positions: int
    whitelisted_markets: List[str]
    risk_profile: Optional[str] = None
    status: str = "active"
    capital_deposited: int = 0
    capital_withdrawn: int = 0
    available_balance: int = 0
    locked_capital: int = 0
    realized_pnl: int = 0
    total_trades: int = 0
    open_positions: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    created_at: int
    last_trade_at: Optional[int] = None

    @property
    def win_rate(self) -> float:
        closed = self.winning_trades + self.losing_trades
        return self.winning_trades / closed if closed else 0.0


class TradeRecord(BaseModel):
    agent: str
    agent_name: str = ""
    position_id: int
    market_id: str
    market_title: str = ""
    direction: str
    amount: int
    price: float
    fee: int
    status: str = "executed"
    pnl: Optional[int] = None
    block_number: int
    timestamp: int


class PositionRecord(BaseModel):
    agent: str
    position_id: int
    market_id: str
    direction: str
    entry_amount: int
    entry_price: float
    status: str = "open"
    opened_at: int
    closed_at: Optional[int] = None
    payout: Optional[int] = None
    realized_pnl: Optional[int] = None


class MarketMirror(BaseModel):
    market_id: str
    name: str
    region: str
    is_active: bool = True
    volume: int = 0
    trade_count: int = 0


class PortfolioStats(BaseModel):
    owner: str
    agent_count: int = 0
    active_agents: int = 0
    capital_deposited: int = 0
    capital_withdrawn: int = 0
    available_balance: int = 0
    locked_capital: int = 0
    total_pnl: int = 0
    total_pnl_percent: float = 0.0
    total_trades: int = 0
    open_positions: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_win_rate: float = 0.0


class EventIndexer:
    """Consumes chain events incrementally and maintains mirror records."""

    def __init__(self, chain: Chain):
        self.chain = chain
        self.cursor = 0
        self.agents: Dict[str, AgentRecord] = {}
        self.markets: Dict[str, MarketMirror] = {}
        self.positions: Dict[str, Dict[int, PositionRecord]] = {}
        self.trades: List[TradeRecord] = []
        self._handlers: Dict[str, Callable[[EventLog], None]] = {
            "AgentCreated": self._on_agent_created,
            "CapitalDeposited": self._on_capital_deposited,
            "CapitalWithdrawn": self._on_capital_withdrawn,
            "TradeExecuted": self._on_trade_executed,
            "PositionClosed": self._on_position_closed,
            "Paused": self._on_paused,
            "Unpaused": self._on_unpaused,
            "MarketRegistered": self._on_market_registered,
            "MarketStatusChanged": self._on_market_status_changed,
        }

    def sync(self) -> int:
        """Apply every event emitted since the last sync; return how many were applied."""
        events = self.chain.get_events(from_index=self.cursor)
        for event in events:
            handler = self._handlers.get(event.event)
            if handler is not None:
                handler(event)
        self.cursor += len(events)
        if events:
            log.debug(f"Indexer applied {len(events)} events (cursor={self.cursor})")
        return len(events)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _on_agent_created(self, event: EventLog) -> None:
        config = event.args["config"]
        address = event.args["agent"]
        self.agents[address] = AgentRecord(
            address=address,
            name=config.get("name", ""),
            owner=event.args["owner"],
            executor=config["executor"],
            max_trade_size=config["max_trade_size"],
            daily_loss_limit=config["daily_loss_limit"],
            max_open_positions=config["max_open_positions"],
            whitelisted_markets=list(config["whitelisted_markets"]),
            risk_profile=config.get("risk_profile"),
            created_at=event.timestamp,
        )
        self.positions[address] = {}

    def _on_capital_deposited(self, event: EventLog) -> None:
        agent = self.agents[event.args["agent"]]
        agent.capital_deposited += event.args["amount"]
        agent.available_balance += event.args["amount"]

    def _on_capital_withdrawn(self, event: EventLog) -> None:
        agent = self.agents[event.args["agent"]]
        agent.capital_withdrawn += event.args["amount"]
        agent.available_balance -= event.args["amount"]

    def _on_trade_executed(self, event: EventLog) -> None:
        args = event.args
        agent = self.agents[args["agent"]]
        agent.available_balance -= args["amount"]
        agent.locked_capital += args["amount"]
        agent.total_trades += 1
        agent.open_positions += 1
        agent.last_trade_at = event.timestamp

        market = self.markets.get(args["market_id"])
        if market is not None:
            market.volume += args["amount"]
            market.trade_count += 1

        self.positions[agent.address][args["position_id"]] = PositionRecord(
            agent=agent.address,
            position_id=args["position_id"],
            market_id=args["market_id"],
            direction=args["direction"],
            entry_amount=args["amount"],
            entry_price=args["price"],
            opened_at=args["opened_at"],
        )
        self.trades.append(
            TradeRecord(
                agent=agent.address,
                agent_name=agent.name,
                position_id=args["position_id"],
                market_id=args["market_id"],
                market_title=market.name if market else "",
                direction=args["direction"],
                amount=args["amount"],
                price=args["price"],
                fee=args["fee"],
                block_number=event.block_number,
                timestamp=event.timestamp,
            )
        )

    def _on_position_closed(self, event: EventLog) -> None:
        args = event.args
        agent = self.agents[args["agent"]]
        position = self.positions[agent.address][args["position_id"]]
        position.status = "closed"
        position.closed_at = args["closed_at"]
        position.payout = args["payout"]
        position.realized_pnl = args["realized_pnl"]

        agent.locked_capital -= position.entry_amount
        agent.available_balance += args["payout"]
        agent.realized_pnl += args["realized_pnl"]
        agent.open_positions -= 1
        if args["realized_pnl"] > 0:
            agent.winning_trades += 1
        elif args["realized_pnl"] < 0:
            agent.losing_trades += 1

        for trade in self.trades:
            if trade.agent == agent.address and trade.position_id == position.position_id:
                trade.pnl = args["realized_pnl"]
                break

    def _on_paused(self, event: EventLog) -> None:
        self.agents[event.args["agent"]].status = "paused"

    def _on_unpaused(self, event: EventLog) -> None:
        self.agents[event.args["agent"]].status = "active"

    def _on_market_registered(self, event: EventLog) -> None:
        args = event.args
        existing = self.markets.get(args["market_id"])
        if existing is None:
            self.markets[args["market_id"]] = MarketMirror(
                market_id=args["market_id"], name=args["name"], region=args["region"]
            )
        else:
            existing.name = args["name"]
            existing.region = args["region"]
            existing.is_active = True

    def _on_market_status_changed(self, event: EventLog) -> None:
        market = self.markets.get(event.args["market_id"])
        if market is not None:
            market.is_active = event.args["is_active"]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_agents(self, owner: Optional[str] = None) -> List[AgentRecord]:
        owner = to_address(owner) if owner else None
        return [agent for agent in self.agents.values() if owner is None or agent.owner == owner]

    def get_positions(self, agent: str, status: Optional[str] = None) -> List[PositionRecord]:
        records = self.positions.get(to_address(agent), {}).values()
        return [record for record in records if status is None or record.status == status]

    def get_trades(
        self, agent: Optional[str] = None, owner: Optional[str] = None, limit: Optional[int] = None
    ) -> List[TradeRecord]:
        """Trades newest first, filtered by agent and/or owner."""
        agents = None
        if owner:
            agents = {record.address for record in self.get_agents(owner)}
        agent = to_address(agent) if agent else None
        trades = [
            trade
            for trade in self.trades
            if (agent is None or trade.agent == agent) and (agents is None or trade.agent in agents)
        ]
        trades.sort(key=lambda trade: (trade.block_number, trade.position_id), reverse=True)
        return trades if limit is None else trades[:limit]

    def portfolio_stats(self, owner: str) -> PortfolioStats:
        owner = to_address(owner)
        stats = PortfolioStats(owner=owner)
        agents = self.get_agents(owner)
        for agent in agents:
            stats.agent_count += 1
            if agent.status == "active":
                stats.active_agents += 1
            stats.capital_deposited += agent.capital_deposited
            stats.capital_withdrawn += agent.capital_withdrawn
            stats.available_balance += agent.available_balance
            stats.locked_capital += agent.locked_capital
            stats.total_pnl += agent.realized_pnl
            stats.total_trades += agent.total_trades
            stats.open_positions += agent.open_positions
            stats.winning_trades += agent.winning_trades
            stats.losing_trades += agent.losing_trades
        closed = stats.winning_trades + stats.losing_trades
        stats.win_rate = stats.winning_trades / closed if closed else 0.0
        if stats.capital_deposited:
            stats.total_pnl_percent = stats.total_pnl / stats.capital_deposited * 100
        if agents:
            stats.avg_win_rate = sum(agent.win_rate for agent in agents) / len(agents)
        return stats

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def publish(self, redis: RedisClient, prefix: Optional[str] = None, ttl: Optional[int] = None) -> int:
        """Write mirror snapshots to Redis; return the number of keys written."""
        prefix = prefix or settings.mirror_key_prefix
        ttl = ttl if ttl is not None else settings.mirror_ttl_seconds
        written = 0

        await redis.set_json(
            f"{prefix}:markets",
            [market.model_dump() for market in self.markets.values()],
            expire=ttl,
        )
        written += 1

        owners = set()
        for agent in self.agents.values():
            owners.add(agent.owner)
            await redis.set_json(f"{prefix}:agents:{agent.address}", agent.model_dump(), expire=ttl)
            await redis.set_json(
                f"{prefix}:positions:{agent.address}",
                [position.model_dump() for position in self.get_positions(agent.address)],
                expire=ttl,
            )
            written += 2

        for owner in sorted(owners):
            await redis.set_json(f"{prefix}:portfolio:{owner}", self.portfolio_stats(owner).model_dump(), expire=ttl)
            written += 1

        log.info(f"Published {written} mirror snapshots to Redis under '{prefix}'")
        return written
