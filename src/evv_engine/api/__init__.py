"""HTTP API for the EVV engine."""
