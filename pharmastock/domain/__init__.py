"""Domain models and pure ledger logic."""
