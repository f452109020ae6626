"""Core package for the Hue bridge sync engine - mirrors a Hue bridge into a local model."""

__all__ = ["config", "logging", "model", "reconciler", "sync"]
__version__ = "1.0.0"
