"""Territory management."""
