"""Yahoo Finance adapter."""

from .quote_adapter import YahooQuoteAdapter, fx_symbol

__all__ = ["YahooQuoteAdapter", "fx_symbol"]
