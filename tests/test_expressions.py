"""Unit tests for interpolation rendering."""

from infracore.engine.expressions import (
    contains_unknown,
    find_expressions,
    lookup_path,
    render,
    resolve_references,
)
from infracore.models import UNKNOWN


VALUES = {"port": 8080, "name": "web", "enabled": True, "tags": {"env": "dev"}}


def resolve(expression):
    return VALUES[expression]


class TestRender:
    """Test rendering of interpolated values."""

    def test_single_interpolation_keeps_type(self):
        """A lone expression yields the referenced value itself."""
        assert render("${port}", resolve) == 8080
        assert render("${tags}", resolve) == {"env": "dev"}

    def test_embedded_interpolation_renders_text(self):
        assert render("${name}:${port}", resolve) == "web:8080"
        assert render("on=${enabled}", resolve) == "on=true"

    def test_nested_structures(self):
        value = {"list": ["${name}", 1], "map": {"p": "${port}"}}

        assert render(value, resolve) == {"list": ["web", 1], "map": {"p": 8080}}

    def test_unknown_inside_text_makes_whole_string_unknown(self):
        assert render("arn:${x}", lambda e: UNKNOWN) == UNKNOWN

    def test_plain_strings_untouched(self):
        assert render("no interpolation", resolve) == "no interpolation"


class TestHelpers:
    """Test expression helpers."""

    def test_find_expressions_deduplicates_in_order(self):
        value = {"a": "${x} ${y}", "b": ["${x}"]}

        assert find_expressions(value) == ["x", "y"]

    def test_contains_unknown(self):
        assert contains_unknown({"a": [1, UNKNOWN]})
        assert not contains_unknown({"a": [1, 2]})

    def test_lookup_path(self):
        value = {"a": {"b": [10, 20]}}

        assert lookup_path(value, ["a", "b", "1"]) == 20
        assert lookup_path(value, ["a", "missing"]) is None


class TestResolveReferences:
    """Test resolution of resource references against known attributes."""

    def test_resolves_known_attributes(self):
        known = {"module.net.fake_vpc.vpc": {"id": "vpc-1"}}

        resolved = resolve_references({"vpc_id": "${module.net.fake_vpc.vpc.id}"}, known)

        assert resolved == {"vpc_id": "vpc-1"}

    def test_missing_address_uses_placeholder(self):
        assert resolve_references("${fake_vpc.a.id}", {}) == UNKNOWN
        assert resolve_references("${fake_vpc.a.id}", {}, missing=None) is None

    def test_missing_attribute_is_none(self):
        assert resolve_references("${fake_vpc.a.nope}", {"fake_vpc.a": {"id": "x"}}) is None
