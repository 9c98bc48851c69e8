"""Provider adapters (IB gateway, Schwab REST, Yahoo Finance)."""
