"""Resource request market."""

from .requests import MarketPolicy, RequestMarket

__all__ = ["MarketPolicy", "RequestMarket"]
