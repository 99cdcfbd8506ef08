"""Tests for the debug log gate."""

from __future__ import annotations

import pytest
import structlog

from tunnelgate.observability.logging import debug_gate


class TestDebugGate:
    def test_drops_debug_when_off(self):
        gate = debug_gate(lambda: False)
        with pytest.raises(structlog.DropEvent):
            gate(None, "debug", {"event": "Incoming request"})

    def test_keeps_debug_when_on(self):
        gate = debug_gate(lambda: True)
        event = {"event": "Incoming request"}
        assert gate(None, "debug", event) is event

    @pytest.mark.parametrize("method", ["info", "warning", "error"])
    def test_other_levels_pass(self, method):
        gate = debug_gate(lambda: False)
        event = {"event": "Config reloaded"}
        assert gate(None, method, event) is event

    def test_follows_live_flag(self):
        state = {"debug": False}
        gate = debug_gate(lambda: state["debug"])
        with pytest.raises(structlog.DropEvent):
            gate(None, "debug", {"event": "x"})
        state["debug"] = True
        assert gate(None, "debug", {"event": "x"}) == {"event": "x"}
