"""Tunnel liveness probing."""

from tunnelgate.probe.liveness import (
    LivenessKind,
    LivenessProber,
    LivenessResult,
    LivenessStatus,
)

__all__ = ["LivenessKind", "LivenessProber", "LivenessResult", "LivenessStatus"]
