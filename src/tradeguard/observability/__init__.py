"""Diagnostics endpoint."""
