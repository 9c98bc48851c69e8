"""SQL schema migrations."""
