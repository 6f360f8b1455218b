"""Tests for typed references."""

from envstack.expressions import (
    UNKNOWN,
    Format,
    InputRef,
    OutputRef,
    ResourceRef,
    contains_unknown,
    fmt,
    is_concrete,
    iter_refs,
    transform,
)


class TestIterRefs:
    def test_nested_references(self):
        value = {
            "name": fmt("{env}-vpc", env=InputRef("env")),
            "ids": [ResourceRef("aws_subnet.public[0]"), "literal"],
            "upstream": {"vpc": OutputRef("vpc", "vpc_id")},
        }
        assert set(iter_refs(value)) == {
            InputRef("env"),
            ResourceRef("aws_subnet.public[0]", "id"),
            OutputRef("vpc", "vpc_id"),
        }

    def test_literals_have_no_references(self):
        assert list(iter_refs({"a": [1, "b", {"c": None}]})) == []


class TestTransform:
    def test_format_renders_when_concrete(self):
        assert transform(fmt("{env}-{index}", env=InputRef("env"), index=2), lambda ref: "dev") == "dev-2"

    def test_format_collapses_to_unknown(self):
        assert transform(fmt("{env}-vpc", env=InputRef("env")), lambda ref: UNKNOWN) is UNKNOWN

    def test_partial_substitution_keeps_format(self):
        result = transform(fmt("{env}-vpc", env=InputRef("env")), lambda ref: OutputRef("a", "b"))
        assert isinstance(result, Format)

    def test_tuples_become_lists(self):
        assert transform(("a", InputRef("x")), lambda ref: "b") == ["a", "b"]

    def test_unknown_inside_list(self):
        value = transform({"ids": [ResourceRef("x"), "y"]}, lambda ref: UNKNOWN)
        assert contains_unknown(value)
        assert not is_concrete(value)


class TestConcrete:
    def test_is_concrete(self):
        assert is_concrete({"a": ["b", 1]})
        assert not is_concrete([InputRef("x")])
        assert not is_concrete(fmt("static"))

    def test_unknown_repr(self):
        assert repr(UNKNOWN) == "(known after apply)"
