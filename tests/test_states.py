"""
Tests for the connection state machine.
"""

import pytest
from transport.states import (
    ConnectionPhase, ConnectionStateMachine,
)


class TestConnectionPhase:
    """Test phase enum helpers."""

    def test_phase_properties(self):
        assert ConnectionPhase.ESTABLISHED.is_established()
        assert not ConnectionPhase.SYN_RECEIVED.is_established()

        assert ConnectionPhase.ESTABLISHED.can_receive_data()
        assert not ConnectionPhase.CLOSING.can_receive_data()
        assert not ConnectionPhase.CLOSED.can_receive_data()

    def test_values(self):
        assert ConnectionPhase.SYN_RECEIVED.value == "syn-received"


class TestConnectionStateMachine:
    """Test state machine transitions."""

    def test_initial_state(self):
        """Test initial state is CLOSED."""
        sm = ConnectionStateMachine()
        assert sm.state == ConnectionPhase.CLOSED
        assert sm.is_closed()
        assert not sm.finished

    def test_handshake(self):
        """Test SYN then ACK reaches ESTABLISHED."""
        sm = ConnectionStateMachine()

        success, action = sm.transition("recv_syn")
        assert success
        assert action == "send_syn_ack"
        assert sm.state == ConnectionPhase.SYN_RECEIVED

        success, action = sm.transition("recv_ack")
        assert success
        assert action == "reset_buffers"
        assert sm.is_established()

    def test_no_skipping(self):
        """An ACK without a SYN is invalid and changes nothing."""
        sm = ConnectionStateMachine()
        success, action = sm.transition("recv_ack")
        assert not success
        assert action is None
        assert sm.state == ConnectionPhase.CLOSED

        success, _ = sm.transition("recv_fin")
        assert not success
        assert sm.state == ConnectionPhase.CLOSED

    def test_teardown(self):
        """Test FIN, then FIN-ACK closes for good."""
        sm = ConnectionStateMachine()
        sm.transition("recv_syn")
        sm.transition("recv_ack")

        success, action = sm.transition("recv_fin")
        assert success
        assert action == "send_fin_ack"
        assert sm.state == ConnectionPhase.CLOSING

        success, action = sm.transition("send_fin_ack")
        assert success
        assert action == "delete_tcb"
        assert sm.state == ConnectionPhase.CLOSED
        assert sm.finished

    def test_finished_accepts_nothing(self):
        """After teardown even a SYN is rejected."""
        sm = ConnectionStateMachine()
        for event in ("recv_syn", "recv_ack", "recv_fin", "send_fin_ack"):
            sm.transition(event)

        success, _ = sm.transition("recv_syn")
        assert not success
        assert sm.finished

    def test_reset(self):
        """Reset works from any state, including finished."""
        sm = ConnectionStateMachine()
        sm.transition("recv_syn")
        success, action = sm.transition("reset")
        assert success
        assert action == "delete_tcb"
        assert sm.state == ConnectionPhase.CLOSED

        for event in ("recv_syn", "recv_ack", "recv_fin", "send_fin_ack"):
            sm.transition(event)
        assert sm.finished
        sm.transition("reset")
        assert not sm.finished

    def test_history_and_callbacks(self):
        """Test transitions are recorded and reported."""
        sm = ConnectionStateMachine()
        seen = []
        sm.on_transition(lambda old, new, event: seen.append((old, new, event)))

        sm.transition("recv_syn")
        sm.transition("recv_ack")

        assert len(sm.history) == 2
        assert "CLOSED --[recv_syn]--> SYN_RECEIVED" in str(sm.history[0])
        assert seen == [
            (ConnectionPhase.CLOSED, ConnectionPhase.SYN_RECEIVED, "recv_syn"),
            (ConnectionPhase.SYN_RECEIVED, ConnectionPhase.ESTABLISHED, "recv_ack"),
        ]

