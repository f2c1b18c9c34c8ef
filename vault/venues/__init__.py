"""Market venues reachable through the market adapter."""

from .base import MarketVenue
from .mock_amm import MockPredictionMarket

__all__ = ["MarketVenue", "MockPredictionMarket"]
