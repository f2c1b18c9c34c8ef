"""
Agent Factory - deploys agent wallets and indexes them by owner.
"""
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from vault.agent_wallet import AgentWallet
from vault.chain import Chain, Contract, to_address, transaction, view
from vault.errors import InvalidConfiguration, OutOfGlobalBounds, VaultError
from vault.logging import log
from vault.market_adapter import MarketAdapter
from vault.models import AgentConfig, RiskProfile
from vault.permission_manager import PermissionManager
from vault.risk_profiles import limits_for


class FactoryStorage(BaseModel):
    owner: str
    user_agents: Dict[str, List[str]] = Field(default_factory=dict)
    all_agents: List[str] = Field(default_factory=list)


class AgentFactory(Contract):
    """Creates `AgentWallet` instances wired to the shared executor and venue."""

    def __init__(
        self,
        chain: Chain,
        *,
        deployer: str,
        executor: str,
        venue: str,
        adapter: MarketAdapter,
        permissions: PermissionManager,
        default_max_open_positions: int,
        accounting_day_seconds: int,
    ):
        self.storage = FactoryStorage(owner=to_address(deployer))
        self.executor = to_address(executor)
        self.venue = to_address(venue)
        self.adapter = adapter
        self.permissions = permissions
        self.default_max_open_positions = default_max_open_positions
        self.accounting_day_seconds = accounting_day_seconds
        super().__init__(chain, deployer=deployer)

    @transaction
    def create_agent(
        self,
        max_trade_size: int,
        daily_loss_limit: int,
        market_ids: Sequence[str],
        *,
        sender: str,
        max_open_positions: Optional[int] = None,
        name: str = "",
    ) -> str:
        """Deploy a wallet with explicit limits; return its address."""
        return self._create(
            owner=to_address(sender),
            max_trade_size=max_trade_size,
            daily_loss_limit=daily_loss_limit,
            max_open_positions=(
                self.default_max_open_positions if max_open_positions is None else max_open_positions
            ),
            market_ids=market_ids,
            risk_profile=None,
            name=name,
        )

    @transaction
    def create_agent_with_profile(
        self, risk_profile: RiskProfile, market_ids: Sequence[str], *, sender: str, name: str = ""
    ) -> str:
        """Deploy a wallet whose limits come from the risk-profile table."""
        profile = RiskProfile(risk_profile)
        limits = limits_for(profile)
        return self._create(
            owner=to_address(sender),
            max_trade_size=limits.max_trade_size,
            daily_loss_limit=limits.daily_loss_limit,
            max_open_positions=limits.max_open_positions,
            market_ids=market_ids,
            risk_profile=profile,
            name=name,
        )

    def _create(
        self,
        *,
        owner: str,
        max_trade_size: int,
        daily_loss_limit: int,
        max_open_positions: int,
        market_ids: Sequence[str],
        risk_profile: Optional[RiskProfile],
        name: str = "",
    ) -> str:
        try:
            whitelist = self._validate(max_trade_size, daily_loss_limit, max_open_positions, market_ids)
        except VaultError as exc:
            log.warning(f"Agent creation for {owner} rejected: {exc.code} - {exc.message}")
            raise

        config = AgentConfig(
            owner=owner,
            executor=self.executor,
            max_trade_size=max_trade_size,
            daily_loss_limit=daily_loss_limit,
            max_open_positions=max_open_positions,
            whitelisted_markets=whitelist,
            risk_profile=risk_profile,
            name=name,
        )
        wallet = AgentWallet(
            self.chain,
            deployer=self.address,
            config=config,
            permissions=self.permissions,
            adapter=self.adapter,
            venue=self.venue,
            accounting_day_seconds=self.accounting_day_seconds,
        )
        self.storage.user_agents.setdefault(owner, []).append(wallet.address)
        self.storage.all_agents.append(wallet.address)
        self._emit("AgentCreated", owner=owner, agent=wallet.address, config=config.model_dump(mode="json"))
        log.info(
            f"Agent {wallet.address} created for {owner} "
            f"(profile={risk_profile.value if risk_profile else 'custom'}, markets={len(whitelist)})"
        )
        return wallet.address

    def _validate(
        self,
        max_trade_size: int,
        daily_loss_limit: int,
        max_open_positions: int,
        market_ids: Sequence[str],
    ) -> List[str]:
        constraints = self.permissions.get_global_constraints()
        if not constraints.min_trade_size <= max_trade_size <= constraints.max_trade_size:
            raise OutOfGlobalBounds(
                f"max trade size {max_trade_size} outside "
                f"[{constraints.min_trade_size}, {constraints.max_trade_size}]"
            )
        if not constraints.min_daily_loss_limit <= daily_loss_limit <= constraints.max_daily_loss_limit:
            raise OutOfGlobalBounds(
                f"daily loss limit {daily_loss_limit} outside "
                f"[{constraints.min_daily_loss_limit}, {constraints.max_daily_loss_limit}]"
            )
        if max_open_positions <= 0:
            raise InvalidConfiguration("max open positions must be positive")
        whitelist = list(dict.fromkeys(market_ids))
        if not whitelist:
            raise InvalidConfiguration("At least one market must be whitelisted")
        return whitelist

    @view
    def get_user_agents(self, owner: str) -> List[str]:
        return list(self.storage.user_agents.get(to_address(owner), []))

    @view
    def get_all_agents(self) -> List[str]:
        return list(self.storage.all_agents)

    @property
    def agent_count(self) -> int:
        return len(self.storage.all_agents)

    def get_agent(self, address: str) -> AgentWallet:
        return self.chain.get_contract(address, AgentWallet)
