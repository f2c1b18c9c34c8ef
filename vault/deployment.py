"""
Deployment of the full contract system onto a chain.

Mirrors the production rollout order: venue, permission manager, adapter,
factory, then venue registration, default markets and executor authorization.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional

from eth_account import Account

from vault.agent_factory import AgentFactory
from vault.agent_wallet import AgentWallet
from vault.chain import Chain, market_id, to_address
from vault.config import Settings, settings as default_settings
from vault.logging import log
from vault.market_adapter import MarketAdapter
from vault.models import MarketConstraints, MarketType
from vault.permission_manager import PermissionManager
from vault.venues import MockPredictionMarket


@dataclass
class Deployment:
    """Handles to every deployed contract and the well-known accounts."""

    chain: Chain
    deployer: str
    executor: str
    fee_collector: str
    venue: MockPredictionMarket
    permission_manager: PermissionManager
    market_adapter: MarketAdapter
    factory: AgentFactory
    markets: Dict[str, str] = field(default_factory=dict)  # market key -> market id

    def agent(self, address: str) -> AgentWallet:
        return self.factory.get_agent(address)

    def summary(self) -> Dict[str, str]:
        return {
            "MockPredictionMarket": self.venue.address,
            "PermissionManager": self.permission_manager.address,
            "MarketAdapter": self.market_adapter.address,
            "AgentFactory": self.factory.address,
            "executor": self.executor,
            "feeCollector": self.fee_collector,
        }


def key_address(private_key: Optional[str]) -> Optional[str]:
    """Address controlled by `private_key`, or None when no key is configured."""
    return Account.from_key(private_key).address if private_key else None


def deploy_system(config: Optional[Settings] = None, chain: Optional[Chain] = None) -> Deployment:
    """Deploy and wire every contract; return the resulting `Deployment`."""
    config = config or default_settings
    chain = chain or Chain()

    deployer = chain.create_account(
        config.deployer_label,
        balance=config.deployer_funding_wei,
        address=key_address(config.deployer_private_key),
    )
    executor = (
        to_address(config.executor_address)
        if config.executor_address
        else chain.create_account(config.executor_label, address=key_address(config.executor_private_key))
    )
    fee_collector = (
        to_address(config.fee_collector_address)
        if config.fee_collector_address
        else chain.create_account(config.fee_collector_label)
    )
    log.info(f"Deploying agent vault contracts with account {deployer}")
    log.info(f"- Executor Address: {executor}")
    log.info(f"- Fee Collector: {fee_collector}")

    venue = MockPredictionMarket(chain, deployer=deployer, liquidity=config.venue_liquidity_wei)
    # Seed the venue so it can pay out more than a single stake
    if config.venue_seed_funding_wei:
        chain.transfer(deployer, venue.address, config.venue_seed_funding_wei)

    permission_manager = PermissionManager(
        chain,
        deployer=deployer,
        constraints=MarketConstraints(
            min_trade_size=config.min_trade_size_wei,
            max_trade_size=config.max_trade_size_wei,
            min_daily_loss_limit=config.min_daily_loss_limit_wei,
            max_daily_loss_limit=config.max_daily_loss_limit_wei,
        ),
    )
    market_adapter = MarketAdapter(
        chain,
        deployer=deployer,
        fee_collector=fee_collector,
        fee_bps=config.protocol_fee_bps,
    )
    factory = AgentFactory(
        chain,
        deployer=deployer,
        executor=executor,
        venue=venue.address,
        adapter=market_adapter,
        permissions=permission_manager,
        default_max_open_positions=config.default_max_open_positions,
        accounting_day_seconds=config.accounting_day_seconds,
    )

    market_adapter.add_market(venue.address, MarketType.MOCK_AMM, sender=deployer)

    markets = {entry["key"]: market_id(entry["key"]) for entry in config.default_markets}
    if markets:
        permission_manager.batch_register_markets(
            [market_id(entry["key"]) for entry in config.default_markets],
            [entry["name"] for entry in config.default_markets],
            [entry["region"] for entry in config.default_markets],
            sender=deployer,
        )
    permission_manager.authorize_executor(executor, True, sender=deployer)

    deployment = Deployment(
        chain=chain,
        deployer=deployer,
        executor=executor,
        fee_collector=fee_collector,
        venue=venue,
        permission_manager=permission_manager,
        market_adapter=market_adapter,
        factory=factory,
        markets=markets,
    )
    log.info(f"Deployment complete: {deployment.summary()}")
    return deployment
