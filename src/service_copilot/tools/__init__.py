"""Tool registry, permission gate, idempotency ledger and executor."""
