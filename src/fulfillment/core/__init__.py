"""Core services - configuration and completion provider."""
