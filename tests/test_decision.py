"""Tests for the reconciliation decision."""

import pytest

from extattr.decision import NO_OP, UNRESOLVED, Decision, DecisionKind, decide, values_equal


class TestDecide:
    """Tests for decide()."""

    def test_case_insensitive_no_op(self) -> None:
        """Test that a casing difference is not a change."""
        assert decide("ABC", "abc") == NO_OP

    def test_update(self) -> None:
        """Test a differing value requires a write."""
        decision = decide("10.0.19045", "10.0.22631")

        assert decision == Decision(DecisionKind.UPDATE, new_value="10.0.22631")
        assert decision.requires_write is True

    def test_update_from_missing(self) -> None:
        """Test writing a value into an empty attribute."""
        assert decide(None, "Zurich").new_value == "Zurich"

    @pytest.mark.parametrize("resolved", [None, ""])
    def test_empty_resolved_is_unresolved(self, resolved: str | None) -> None:
        """Test that an empty resolved value never clears the attribute."""
        decision = decide("Zurich", resolved)

        assert decision == UNRESOLVED
        assert decision.requires_write is False

    def test_no_op_does_not_write(self) -> None:
        """Test NoOp carries no new value."""
        assert NO_OP.requires_write is False
        assert NO_OP.new_value is None


class TestValuesEqual:
    """Tests for values_equal()."""

    @pytest.mark.parametrize(
        ("current", "resolved", "expected"),
        [
            ("abc", "ABC", True),
            (None, "", True),
            (None, None, True),
            ("Straße", "STRASSE", True),
            ("a", "b", False),
            (None, "a", False),
        ],
    )
    def test_values_equal(self, current: str | None, resolved: str | None, expected: bool) -> None:
        """Test equality semantics."""
        assert values_equal(current, resolved) is expected
