"""
Core package for the Agent Vault.
"""
from vault.config import settings
from vault.logging import log
from vault.chain import Chain, market_id
from vault.permission_manager import PermissionManager
from vault.market_adapter import MarketAdapter
from vault.agent_wallet import AgentWallet
from vault.agent_factory import AgentFactory
from vault.deployment import Deployment, deploy_system
from vault.indexer import EventIndexer
from vault.redis_client import redis_client
from vault.models import *

__all__ = [
    "settings",
    "log",
    "Chain",
    "market_id",
    "PermissionManager",
    "MarketAdapter",
    "AgentWallet",
    "AgentFactory",
    "Deployment",
    "deploy_system",
    "EventIndexer",
    "redis_client",
]
