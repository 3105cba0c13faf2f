"""Tests for version, range and dependency parsing."""

import pytest

from versioning.models import ANY_RANGE, Operator, PackageId
from versioning.parser import normalize_name, parse_dependency, parse_range, parse_version


class TestParseVersion:
    """Versions are semver plus an optional revision."""

    def test_full_version(self):
        v = parse_version("1.2.3")
        assert (v.semver.major, v.semver.minor, v.semver.patch) == (1, 2, 3)
        assert v.revision is None
        assert str(v) == "1.2.3"

    def test_revision_suffix(self):
        v = parse_version("1.1.0-2")
        assert v.revision == 2
        assert str(v) == "1.1.0-2"

    def test_short_version_is_coerced(self):
        v = parse_version("1.2")
        assert str(v) == "1.2.0"
        assert v.precision == 2

    def test_leading_v_is_stripped(self):
        assert parse_version("v2.0.1") == parse_version("2.0.1")

    def test_prerelease_is_not_a_revision(self):
        v = parse_version("2.0.0-rc.1")
        assert v.is_prerelease
        assert v.revision is None

    def test_revision_orders_after_base(self):
        assert parse_version("1.0.0") < parse_version("1.0.0-1") < parse_version("1.0.0-2") < parse_version("1.0.1")

    def test_missing_revision_equals_revision_zero(self):
        assert parse_version("1.0.0") == parse_version("1.0.0-0")

    @pytest.mark.parametrize("text", ["", "abc", "scm"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_version(text)


class TestParseRange:
    """Comma-separated comparator conjunctions."""

    def test_empty_and_star_mean_any(self):
        assert parse_range("") is ANY_RANGE
        assert parse_range(None) is ANY_RANGE
        assert parse_range("*") is ANY_RANGE

    def test_bounded_range(self):
        rng = parse_range(">= 1.0, < 2.0")
        assert parse_version("1.0") in rng
        assert parse_version("1.5") in rng
        assert parse_version("2.0") not in rng

    def test_bare_version_is_exact(self):
        rng = parse_range("1.5")
        assert rng.comparators[0].operator is Operator.EQ
        assert parse_version("1.5.0") in rng
        assert parse_version("1.5.1") not in rng

    def test_pessimistic_two_components(self):
        rng = parse_range("~> 1.2")
        assert parse_version("1.2.0") in rng
        assert parse_version("1.9.3") in rng
        assert parse_version("2.0.0") not in rng
        assert parse_version("1.1.9") not in rng

    def test_pessimistic_three_components(self):
        rng = parse_range("~> 1.2.3")
        assert parse_version("1.2.9") in rng
        assert parse_version("1.3.0") not in rng

    def test_comparator_without_revision_ignores_candidate_revision(self):
        rng = parse_range("== 1.0.0")
        assert parse_version("1.0.0-3") in rng

    def test_comparator_with_revision_is_strict(self):
        rng = parse_range(">= 1.0.0-2")
        assert parse_version("1.0.0-1") not in rng
        assert parse_version("1.0.0-2") in rng

    def test_prerelease_allowed_only_when_named(self):
        assert not parse_range(">= 1.0").allows_prerelease
        assert parse_range(">= 2.0.0-rc.1").allows_prerelease

    def test_intersection(self):
        rng = parse_range(">= 1.0").intersect(parse_range("< 2.0"))
        assert parse_version("1.9") in rng
        assert parse_version("2.0") not in rng

    def test_invalid_clause(self):
        with pytest.raises(ValueError):
            parse_range(">= 1.0,, < 2")


class TestNamesAndDependencies:
    """Package names and ``name range`` strings."""

    def test_normalize_name_lowercases(self):
        assert normalize_name("LuaSocket") == "luasocket"

    def test_normalize_name_rejects_spaces(self):
        with pytest.raises(ValueError):
            normalize_name("lua socket")

    def test_parse_dependency(self):
        name, rng = parse_dependency("lpeg ~> 1.0")
        assert name == "lpeg"
        assert parse_version("1.1.0") in rng

    def test_parse_dependency_without_range(self):
        name, rng = parse_dependency("penlight")
        assert name == "penlight"
        assert rng.is_any

    def test_package_id_str(self):
        assert str(PackageId("lpeg", parse_version("1.1.0-2"))) == "lpeg@1.1.0-2"
