"""Configuration package for the crowdfunding backend."""
from .settings import GatewayConfig, GatewayEndpoints, Settings, get_settings

__all__ = ["GatewayConfig", "GatewayEndpoints", "Settings", "get_settings"]
