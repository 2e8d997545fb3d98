"""Credit ledger: balances and the append-only transaction log."""
