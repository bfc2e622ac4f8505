"""Strategy parameter optimizer."""
