"""Preset limits applied by `AgentFactory.create_agent_with_profile`.

Operators audit and adjust the table below; nothing else in the code base
derives limits from a risk profile.
"""
from typing import Dict, NamedTuple

from vault.config import ETHER
from vault.models import RiskProfile


class RiskLimits(NamedTuple):
    max_trade_size: int
    daily_loss_limit: int
    max_open_positions: int


RISK_PROFILE_LIMITS: Dict[RiskProfile, RiskLimits] = {
    RiskProfile.CONSERVATIVE: RiskLimits(
        max_trade_size=ETHER // 20,  # 0.05 ETH
        daily_loss_limit=ETHER // 10,  # 0.10 ETH
        max_open_positions=3,
    ),
    RiskProfile.MODERATE: RiskLimits(
        max_trade_size=ETHER // 10,  # 0.10 ETH
        daily_loss_limit=ETHER // 4,  # 0.25 ETH
        max_open_positions=5,
    ),
    RiskProfile.AGGRESSIVE: RiskLimits(
        max_trade_size=ETHER // 2,  # 0.50 ETH
        daily_loss_limit=ETHER,  # 1.00 ETH
        max_open_positions=10,
    ),
}


def limits_for(profile: RiskProfile) -> RiskLimits:
    return RISK_PROFILE_LIMITS[RiskProfile(profile)]
