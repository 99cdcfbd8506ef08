"""Control event authorization."""

from tunnelgate.auth.engine import ActivityUpdate, AuthorizationEngine, Decision, extract_ip

__all__ = ["ActivityUpdate", "AuthorizationEngine", "Decision", "extract_ip"]
