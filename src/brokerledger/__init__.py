"""brokerledger - commission statements and per-user ledger."""

__version__ = "0.1.0"
