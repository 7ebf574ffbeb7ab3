"""Bank server, account ledger and peer-to-peer payment client over TLS."""

__version__ = "0.1.0"