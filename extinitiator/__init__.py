"""Subscribe to external blockchain endpoints and store endpoints and subscriptions."""

__version__ = "0.1.0"