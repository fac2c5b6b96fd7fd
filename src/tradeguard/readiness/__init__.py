"""Portfolio readiness state machine."""
