"""Model-call health ledger, response validation and technical fallback."""
