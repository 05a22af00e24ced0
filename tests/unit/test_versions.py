"""
Tests for package version ordering and constraints.
"""

import pytest

from settle.engine.versions import VersionConstraint, compare_versions, parse_constraint


class TestCompareVersions:
    """Test Debian version ordering."""

    @pytest.mark.parametrize("a,b,expected", [
        ("1.18.0-6", "1.22.1-9", -1),
        ("1.22.1-9", "1.18.0-6", 1),
        ("1.10", "1.9", 1),
        ("1.0~rc1", "1.0", -1),
        ("1:0.9", "2.0", 1),
        ("1.0", "1.0-0", 0),
        ("2.4.57-2", "2.4.57-2", 0),
        ("1.2a", "1.2", 1),
        ("7.4.0-1ubuntu1", "7.4.0-1", 1),
    ])
    def test_ordering(self, a: str, b: str, expected: int):
        """Test numeric segments compare numerically, ~ sorts first, epochs win."""
        assert compare_versions(a, b) == expected


class TestConstraints:
    """Test parsing and matching of version parameters."""

    def test_exact(self):
        """Test a bare version is an exact, pinnable constraint."""
        constraint = parse_constraint("1.18.0-6")

        assert constraint == VersionConstraint("==", "1.18.0-6")
        assert constraint.pinnable
        assert constraint.satisfied_by("1.18.0-6")
        assert not constraint.satisfied_by("1.18.0-7")
        assert not constraint.satisfied_by(None)

    def test_exact_without_revision(self):
        """Test an upstream-only version accepts any Debian revision."""
        constraint = parse_constraint("1.18.0")

        assert constraint.satisfied_by("1.18.0-6")
        assert not constraint.satisfied_by("1.18.01-1")
        assert not constraint.satisfied_by("1.18.1-1")

    def test_glob(self):
        """Test glob patterns."""
        constraint = parse_constraint("1.18*")

        assert constraint.operator == "glob"
        assert constraint.pinnable
        assert constraint.satisfied_by("1.18.0-6")
        assert not constraint.satisfied_by("1.22.1-9")
        assert str(constraint) == "1.18*"

    @pytest.mark.parametrize("text,installed,expected", [
        (">=1.20", "1.22.1-9", True),
        (">=1.20", "1.18.0-6", False),
        ("<1.20", "1.18.0-6", True),
        ("<=1.18.0-6", "1.18.0-6", True),
        (">1.18.0-6", "1.18.0-6", False),
        ("!=1.18.0-6", "1.22.1-9", True),
        ("=1.22.1-9", "1.22.1-9", True),
    ])
    def test_comparisons(self, text: str, installed: str, expected: bool):
        """Test comparison operators."""
        constraint = parse_constraint(text)
        assert constraint.satisfied_by(installed) is expected

    def test_ranges_are_not_pinnable(self):
        """Test range constraints cannot be passed to the package manager."""
        assert not parse_constraint(">=1.20").pinnable
        assert str(parse_constraint(">= 1.20")) == ">=1.20"

    def test_empty_means_any(self):
        """Test an unset version is no constraint."""
        assert parse_constraint(None) is None
        assert parse_constraint("  ") is None

    def test_operator_without_version(self):
        """Test '>=' alone is rejected."""
        with pytest.raises(ValueError, match="has no version"):
            parse_constraint(">=")
