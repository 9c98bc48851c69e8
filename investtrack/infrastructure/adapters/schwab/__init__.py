"""Charles Schwab OAuth and Trader API adapters."""

from .oauth_client import SchwabOAuthClient, is_terminal_token_error
from .trader_client import SchwabAccount, SchwabTraderClient, map_position

__all__ = [
    "SchwabOAuthClient",
    "SchwabTraderClient",
    "SchwabAccount",
    "is_terminal_token_error",
    "map_position",
]
