"""Signal screening, analysis and selection."""
