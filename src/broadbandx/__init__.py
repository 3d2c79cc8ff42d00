"""BroadbandX subscription platform: plan catalog and subscription lifecycle engine."""

__version__ = "1.0.0"
