from tunnelgate.observability.logging import configure_logging, debug_gate

__all__ = ["configure_logging", "debug_gate"]
