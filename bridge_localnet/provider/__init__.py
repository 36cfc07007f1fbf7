"""Backend ledger processes."""
