"""wsbridge - carry stdin/stdout over a WebSocket tunnel."""

__version__ = "0.3.0"
