"""Order fulfillment orchestrator - AI agents working client service orders."""

__version__ = "0.1.0"
