"""Agent runtime implementations."""
