"""
Pytest configuration and shared fixtures.
"""
import json
from typing import Any, Dict, Optional

import pytest

from vault.chain import Chain
from vault.config import ETHER, Settings
from vault.deployment import Deployment, deploy_system
from vault.agent_factory import AgentFactory
from vault.models import MarketType, TradeDirection
from vault.redis_client import RedisClient

GENESIS = 1_767_225_600  # 2026-01-01T00:00:00Z

# Throwaway signing keys for the operator and owner accounts used over HTTP
DEPLOYER_KEY = "0x" + "11" * 32
EXECUTOR_KEY = "0x" + "22" * 32
OWNER_KEY = "0x" + "33" * 32
STRANGER_KEY = "0x" + "44" * 32


class FakeRedis:
    """In-memory stand-in for the `redis.asyncio` connection behind RedisClient."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.expiries: Dict[str, Optional[int]] = {}

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        self.store[key] = value
        self.expiries[key] = ex

    def load(self, key: str) -> Any:
        return json.loads(self.store[key])


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def mirror_client(fake_redis: FakeRedis) -> RedisClient:
    """RedisClient wired to the in-memory connection."""
    client = RedisClient(url="redis://mirror-test:6379/0")
    client.redis = fake_redis
    return client


@pytest.fixture
def vault_settings() -> Settings:
    """Settings with the documented defaults, independent of the environment."""
    return Settings(_env_file=None, environment="test", mirror_redis_enabled=False)


@pytest.fixture
def chain() -> Chain:
    """Chain with a frozen clock starting at GENESIS."""
    return Chain(genesis_timestamp=GENESIS)


@pytest.fixture
def deployment(vault_settings: Settings, chain: Chain) -> Deployment:
    """Fully wired system: venue, permission manager, adapter, factory."""
    return deploy_system(vault_settings, chain)


@pytest.fixture
def executor(deployment: Deployment) -> str:
    return deployment.executor


@pytest.fixture
def owner(chain: Chain) -> str:
    """Agent owner funded with 10 ETH."""
    return chain.create_account("owner", balance=10 * ETHER)


@pytest.fixture
def stranger(chain: Chain) -> str:
    return chain.create_account("stranger", balance=ETHER)


@pytest.fixture
def nigeria_market(deployment: Deployment) -> str:
    return deployment.markets["NIGERIA_ELECTION_2027"]


@pytest.fixture
def kenya_market(deployment: Deployment) -> str:
    return deployment.markets["KENYA_SHILLING_Q2_2026"]


@pytest.fixture
def agent(deployment: Deployment, owner: str, nigeria_market: str):
    """Agent with 0.1 ETH max trade, 0.25 ETH daily loss limit and 1 ETH deposited."""
    address = deployment.factory.create_agent(
        ETHER // 10,
        ETHER // 4,
        [nigeria_market],
        sender=owner,
    )
    wallet = deployment.agent(address)
    wallet.deposit_capital(sender=owner, value=ETHER)
    return wallet


@pytest.fixture
def open_position(agent, executor: str, nigeria_market: str) -> int:
    """Position id of a 0.05 ETH BUY on the Nigeria market."""
    return agent.execute_trade(nigeria_market, ETHER // 20, TradeDirection.BUY, sender=executor)


@pytest.fixture
def scripted_venue(deployment: Deployment):
    """Scripted venue registered with the adapter; protocol fee set to zero."""
    from tests.mocks.mock_venues import ScriptedVenue

    venue = ScriptedVenue(deployment.chain, deployer=deployment.deployer)
    deployment.chain.fund(venue.address, 5 * ETHER)
    deployment.market_adapter.add_market(venue.address, MarketType.POLYMARKET, sender=deployment.deployer)
    deployment.market_adapter.set_protocol_fee(0, sender=deployment.deployer)
    return venue


@pytest.fixture
def scripted_factory(deployment: Deployment, scripted_venue) -> AgentFactory:
    """Factory whose wallets trade on the scripted venue."""
    factory = AgentFactory(
        deployment.chain,
        deployer=deployment.deployer,
        executor=deployment.executor,
        venue=scripted_venue.address,
        adapter=deployment.market_adapter,
        permissions=deployment.permission_manager,
        default_max_open_positions=5,
        accounting_day_seconds=86_400,
    )
    return factory


@pytest.fixture
def scripted_agent(deployment: Deployment, scripted_factory: AgentFactory, owner: str, nigeria_market: str):
    """Agent on the scripted venue: 0.3 ETH max trade, 0.25 ETH daily loss limit, 2 ETH deposited."""
    address = scripted_factory.create_agent(
        3 * ETHER // 10,
        ETHER // 4,
        [nigeria_market],
        sender=owner,
    )
    wallet = deployment.agent(address)
    wallet.deposit_capital(sender=owner, value=2 * ETHER)
    return wallet
