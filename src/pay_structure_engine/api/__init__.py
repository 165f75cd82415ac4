"""HTTP API for the pay structure engine."""
