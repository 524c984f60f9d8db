"""Run engine services."""
