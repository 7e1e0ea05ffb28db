"""Tests for EVV record state machine."""

from datetime import timedelta

import pytest

from evv_engine.services.state_machine import (
    EVVRecordStateMachine,
    EVVRecordStatus,
    InvalidTransitionError,
    is_edit_window_closed,
)
from tests.conftest import NOW


class TestEVVRecordStateMachine:
    """Test state machine transitions."""

    def test_valid_transitions(self):
        """Test that valid transitions are allowed."""
        # PENDING → COMPLETE (clock-out)
        assert EVVRecordStateMachine.can_transition("PENDING", "COMPLETE") is True

        # COMPLETE → SUBMITTED
        assert EVVRecordStateMachine.can_transition("COMPLETE", "SUBMITTED") is True

        # SUBMITTED → APPROVED
        assert EVVRecordStateMachine.can_transition("SUBMITTED", "APPROVED") is True

        # REJECTED → AMENDED (correction)
        assert EVVRecordStateMachine.can_transition("REJECTED", "AMENDED") is True

        # DISPUTED → APPROVED
        assert EVVRecordStateMachine.can_transition("DISPUTED", "APPROVED") is True

    def test_invalid_transitions(self):
        """Test that invalid transitions are blocked."""
        # Can't submit an open visit
        assert EVVRecordStateMachine.can_transition("PENDING", "SUBMITTED") is False

        # Can't reopen
        assert EVVRecordStateMachine.can_transition("COMPLETE", "PENDING") is False

        # Terminal statuses
        assert EVVRecordStateMachine.can_transition("APPROVED", "AMENDED") is False
        assert EVVRecordStateMachine.can_transition("AMENDED", "COMPLETE") is False
        assert EVVRecordStateMachine.can_transition("VOIDED", "PENDING") is False

    def test_validate_transition_raises(self):
        """Test that validate_transition raises for invalid transitions."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            EVVRecordStateMachine.validate_transition("PENDING", "APPROVED")

        assert exc_info.value.from_status == "PENDING"
        assert exc_info.value.to_status == "APPROVED"
        assert "Invalid transition from 'PENDING' to 'APPROVED'" in str(exc_info.value)

    def test_can_amend(self):
        """Test amendable statuses."""
        assert EVVRecordStateMachine.can_amend(EVVRecordStatus.COMPLETE) is True
        assert EVVRecordStateMachine.can_amend("SUBMITTED") is True
        assert EVVRecordStateMachine.can_amend("REJECTED") is True
        assert EVVRecordStateMachine.can_amend("PENDING") is False
        assert EVVRecordStateMachine.can_amend("APPROVED") is False
        assert EVVRecordStateMachine.can_amend("AMENDED") is False

    def test_terminal_statuses(self):
        for status in ("APPROVED", "AMENDED", "VOIDED"):
            assert EVVRecordStateMachine.is_terminal(status) is True
        assert EVVRecordStateMachine.is_terminal("COMPLETE") is False

    def test_every_status_has_an_entry(self):
        assert set(EVVRecordStateMachine.VALID_TRANSITIONS) == set(EVVRecordStatus)


class TestEditWindow:
    """Direct-edit window closes after the threshold."""

    def test_open_within_threshold(self):
        assert is_edit_window_closed(NOW - timedelta(days=30), NOW) is False

    def test_closed_after_threshold(self):
        assert is_edit_window_closed(NOW - timedelta(days=30, seconds=1), NOW) is True

    def test_custom_threshold(self):
        assert is_edit_window_closed(NOW - timedelta(days=8), NOW, threshold_days=7) is True
