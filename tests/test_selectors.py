"""Tests for label selector compilation, parsing and matching."""

from __future__ import annotations

import pytest

from tinkerbell_provider.errors import ErrorKind, SelectorError
from tinkerbell_provider.models import LabelSelector
from tinkerbell_provider.selectors import (
    Operator,
    Selector,
    requirement,
    validate_label_key,
    validate_label_value,
)


class TestLabelValidation:
    """Tests for label key and value validation."""

    @pytest.mark.parametrize(
        "key",
        ["rack", "type", "v1alpha1.tinkerbell.org/ownerName", "example.com/a_b.c-d", "A1"],
    )
    def test_valid_keys(self, key: str) -> None:
        """Test well-formed keys pass."""
        assert validate_label_key(key) is None

    @pytest.mark.parametrize(
        "key",
        ["", "-rack", "rack-", "/name", "Example.com/name", "a/b/c", "x" * 64, "has space"],
    )
    def test_invalid_keys(self, key: str) -> None:
        """Test malformed keys are reported."""
        assert validate_label_key(key) is not None

    def test_empty_value_is_valid(self) -> None:
        """Test that the empty string is a legal label value."""
        assert validate_label_value("") is None

    def test_value_too_long(self) -> None:
        """Test values over 63 characters are rejected."""
        assert validate_label_value("v" * 64) is not None


class TestRequirement:
    """Tests for single requirements."""

    def test_in_matches_listed_value(self) -> None:
        """Test In matches when the label value is listed."""
        req = requirement("rack", Operator.IN, ["r1", "r2"])
        assert req.matches({"rack": "r2"})
        assert not req.matches({"rack": "r3"})
        assert not req.matches({})

    def test_not_in_matches_absent_key(self) -> None:
        """Test NotIn is satisfied by a missing key."""
        req = requirement("rack", Operator.NOT_IN, ["r1"])
        assert req.matches({})
        assert req.matches({"rack": "r2"})
        assert not req.matches({"rack": "r1"})

    def test_exists_and_does_not_exist(self) -> None:
        """Test existence operators ignore values."""
        assert requirement("gpu", Operator.EXISTS).matches({"gpu": ""})
        assert not requirement("gpu", Operator.DOES_NOT_EXIST).matches({"gpu": "a100"})
        assert requirement("gpu", Operator.DOES_NOT_EXIST).matches({"type": "cp"})

    def test_in_requires_values(self) -> None:
        """Test In without values is a selector error."""
        with pytest.raises(SelectorError, match="requires at least one value"):
            requirement("rack", Operator.IN, [])

    def test_exists_rejects_values(self) -> None:
        """Test Exists with values is a selector error."""
        with pytest.raises(SelectorError, match="does not take values"):
            requirement("rack", Operator.EXISTS, ["r1"])

    def test_string_forms(self) -> None:
        """Test each operator renders in the text grammar."""
        assert str(requirement("a", Operator.EQUALS, ["b"])) == "a=b"
        assert str(requirement("a", Operator.NOT_EQUALS, ["b"])) == "a!=b"
        assert str(requirement("a", Operator.IN, ["c", "b"])) == "a in (b,c)"
        assert str(requirement("a", Operator.NOT_IN, ["b"])) == "a notin (b)"
        assert str(requirement("a", Operator.EXISTS)) == "a"
        assert str(requirement("a", Operator.DOES_NOT_EXIST)) == "!a"


class TestFromLabelSelector:
    """Tests for compiling LabelSelector models."""

    def test_empty_selector_matches_everything(self) -> None:
        """Test an empty LabelSelector matches any labels."""
        selector = Selector.from_label_selector(LabelSelector())
        assert selector.empty
        assert selector.matches({"anything": "goes"})
        assert selector.matches(None)

    def test_match_labels_and_expressions_are_anded(self) -> None:
        """Test matchLabels and matchExpressions must all hold."""
        selector = Selector.from_label_selector(
            LabelSelector.model_validate(
                {
                    "matchLabels": {"type": "worker"},
                    "matchExpressions": [{"key": "rack", "operator": "In", "values": ["r1"]}],
                }
            )
        )
        assert selector.matches({"type": "worker", "rack": "r1"})
        assert not selector.matches({"type": "worker", "rack": "r2"})
        assert not selector.matches({"rack": "r1"})

    def test_unknown_operator(self) -> None:
        """Test an unknown operator fails with selector context."""
        ls = LabelSelector.model_validate(
            {"matchExpressions": [{"key": "rack", "operator": "Near", "values": ["r1"]}]}
        )
        with pytest.raises(SelectorError) as exc_info:
            Selector.from_label_selector(ls)

        assert exc_info.value.kind is ErrorKind.SELECTOR
        assert "Near" in str(exc_info.value)
        assert "selector" in exc_info.value.context

    def test_invalid_match_label_key(self) -> None:
        """Test a malformed matchLabels key is not silently skipped."""
        ls = LabelSelector.model_validate({"matchLabels": {"bad key": "x"}})
        with pytest.raises(SelectorError, match="invalid label key"):
            Selector.from_label_selector(ls)

    def test_with_requirement_appends(self) -> None:
        """Test composing an extra clause onto a compiled selector."""
        base = Selector.from_label_selector(
            LabelSelector.model_validate({"matchLabels": {"type": "worker"}})
        )
        combined = base.with_requirement(requirement("owner", Operator.DOES_NOT_EXIST))
        assert str(combined) == "type=worker,!owner"
        assert not combined.matches({"type": "worker", "owner": "m1"})


class TestParse:
    """Tests for the textual selector grammar."""

    def test_parse_all_clause_types(self) -> None:
        """Test each supported clause parses to the right operator."""
        selector = Selector.parse("a=1,b==2,c!=3,d,!e,f in (x, y),g notin (z)")
        operators = [req.operator for req in selector.requirements]
        assert operators == [
            Operator.EQUALS,
            Operator.EQUALS,
            Operator.NOT_EQUALS,
            Operator.EXISTS,
            Operator.DOES_NOT_EXIST,
            Operator.IN,
            Operator.NOT_IN,
        ]
        assert selector.requirements[5].values == ("x", "y")

    def test_parse_round_trips_through_str(self) -> None:
        """Test the rendered form parses back to the same selector."""
        text = "rack in (r1,r2),type=worker,!v1alpha1.tinkerbell.org/ownerName"
        assert str(Selector.parse(text)) == text

    def test_blank_text_is_empty_selector(self) -> None:
        """Test blank input yields the match-everything selector."""
        assert Selector.parse("  ").empty

    @pytest.mark.parametrize(
        "text",
        ["a=1,,b=2", "a in (x", "a in x)", "a in ()", "=x", "a=b=c", "a b", "!"],
    )
    def test_malformed_text(self, text: str) -> None:
        """Test malformed selector text raises SelectorError."""
        with pytest.raises(SelectorError):
            Selector.parse(text)

    def test_error_carries_selector_text(self) -> None:
        """Test the offending selector is attached as context."""
        with pytest.raises(SelectorError) as exc_info:
            Selector.parse("type=worker,bad key")
        assert exc_info.value.context["selector"] == "type=worker,bad key"
