"""版本约束解析与版本选择测试"""

from __future__ import annotations

import pytest
from packaging.version import Version

from wdm.core.dep.version import parse_constraint, parse_version, resolve, version_text
from wdm.core.exceptions import InvalidConstraintSyntax, NoMatchingVersion


class TestParseVersion:
    @pytest.mark.parametrize(("tag", "expected"), [
        ("1.2.3", "1.2.3"),
        ("v1.2.3", "1.2.3"),
        ("V2.0", "2.0"),
        ("1.0.0+build.5", "1.0.0"),
        ("2.0.0-beta.2", "2.0.0b2"),
        ("3.1.0-rc1", "3.1.0rc1"),
    ])
    def test_parseable(self, tag: str, expected: str) -> None:
        assert parse_version(tag) == Version(expected)

    @pytest.mark.parametrize("tag", ["nightly", "release/1.0", "1.2.3.4", "1.0.0-1", "", "v"])
    def test_unparseable(self, tag: str) -> None:
        assert parse_version(tag) is None

    def test_version_text_strips_prefix(self) -> None:
        assert version_text("v1.2.0") == "1.2.0"
        assert version_text("1.2.0") == "1.2.0"
        assert version_text("vendor-build") == "vendor-build"


class TestParseConstraint:
    @pytest.mark.parametrize(("text", "kind"), [
        ("1.2.0", "exact"),
        ("v1.2.0", "exact"),
        ("2.0.0-beta.1", "exact"),
        ("nightly", "exact"),
        ("release/2024", "exact"),
        ("latest", "latest"),
        ("LATEST", "latest"),
        ("^1.0", "range"),
        ("~1.2.3", "range"),
        (">=1.0, <2.0", "range"),
        ("1.*", "range"),
        ("1.x", "range"),
        ("*", "range"),
        ("1.2", "range"),
        ("^1 || ^3", "range"),
    ])
    def test_kinds(self, text: str, kind: str) -> None:
        result = parse_constraint(text)
        assert result.ok, result.error
        assert result.constraint.kind == kind

    @pytest.mark.parametrize("text", [
        "", "   ", "^^1", ">=1.0 <", "1.2.3 || ", "foo bar!", "@@@", "1.*.3", ">1.*", "!=1.2",
    ])
    def test_invalid_returns_error_instead_of_raising(self, text: str) -> None:
        result = parse_constraint(text)
        assert not result.ok
        assert result.error

    def test_allows_checks_locked_version_offline(self) -> None:
        caret = parse_constraint("^1.0").constraint
        assert caret.allows("1.5.0")
        assert not caret.allows("2.0.0")
        assert not caret.allows("1.6.0-beta.1")

        exact = parse_constraint("1.2.0").constraint
        assert exact.allows("1.2.0", "v1.2.0")
        assert not exact.allows("1.3.0", "v1.3.0")

        latest = parse_constraint("latest").constraint
        assert latest.allows("9.9.9")
        assert not latest.allows("2.0.0-beta")

    def test_unwrap(self) -> None:
        assert parse_constraint("^1.0").unwrap().kind == "range"
        with pytest.raises(InvalidConstraintSyntax, match=r"\^\^1"):
            parse_constraint("^^1").unwrap()


class TestResolve:
    def test_exact_tags_resolve_to_themselves(self) -> None:
        tags = ["1.0.0", "nightly", "v2.0.0", "release/1.0", "3.0.0-rc.1"]
        for tag in tags:
            assert resolve(tag, tags).version == tag
            assert resolve(tag, tags).reference == tag

    def test_exact_matches_v_prefixed_tag(self) -> None:
        res = resolve("1.2.0", ["v1.1.0", "v1.2.0"])
        assert res.version == "1.2.0"
        assert res.reference == "v1.2.0"

    def test_exact_missing(self) -> None:
        with pytest.raises(NoMatchingVersion):
            resolve("3.0.0", ["1.0.0", "2.0.0"])

    def test_latest_excludes_prerelease(self) -> None:
        res = resolve("latest", ["1.0.0", "1.2.0", "2.0.0-beta"])
        assert res.version == "1.2.0"

    def test_latest_without_stable_tag(self) -> None:
        with pytest.raises(NoMatchingVersion):
            resolve("latest", ["2.0.0-beta", "nightly"])

    def test_caret_picks_highest(self) -> None:
        assert resolve("^1.0", ["0.9.0", "1.0.0", "1.4.2", "2.0.0"]).version == "1.4.2"

    @pytest.mark.parametrize(("constraint", "tags", "expected"), [
        ("~1.2.3", ["1.2.3", "1.2.9", "1.3.0"], "1.2.9"),
        (">=1.0, <2.0", ["0.5.0", "1.5.0", "2.0.0"], "1.5.0"),
        (">= 1.0 < 2.0", ["0.5.0", "1.5.0", "2.0.0"], "1.5.0"),
        ("^1 || ^3", ["1.1.0", "2.5.0", "3.0.1"], "3.0.1"),
        ("1.*", ["1.0.0", "1.9.0", "2.0.0"], "1.9.0"),
        ("1.x", ["1.0.0", "1.9.0", "2.0.0"], "1.9.0"),
        ("*", ["0.1.0", "4.0.0", "5.0.0-alpha"], "4.0.0"),
        ("^0.2.3", ["0.2.3", "0.2.9", "0.3.0"], "0.2.9"),
        ("^0.0.3", ["0.0.3", "0.0.4"], "0.0.3"),
        ("1.2", ["1.1.0", "1.2.0", "1.8.0", "2.0.0"], "1.8.0"),
        ("<=1.4", ["1.3.0", "1.4.7", "1.5.0"], "1.4.7"),
        (">1.4", ["1.4.7", "1.5.0"], "1.5.0"),
        ("^1.0, !=1.9.0", ["1.8.0", "1.9.0"], "1.8.0"),
        (">=1.0.0", ["1.0.0", "2.0.0-rc.1"], "1.0.0"),
    ])
    def test_ranges(self, constraint: str, tags: list[str], expected: str) -> None:
        assert resolve(constraint, tags).version == expected

    def test_range_result_strips_v_prefix(self) -> None:
        res = resolve("^1.0", ["v1.2.0", "v1.5.0"])
        assert res.version == "1.5.0"
        assert res.reference == "v1.5.0"

    def test_prerelease_only_when_pinned_exactly(self) -> None:
        tags = ["1.0.0", "2.0.0-beta.1"]
        assert resolve("=2.0.0-beta.1", tags).version == "2.0.0-beta.1"
        assert resolve(">=1.0.0", tags).version == "1.0.0"

    def test_range_ignores_unparseable_tags(self) -> None:
        assert resolve("^1.0", ["nightly", "1.1.0", "release/9"]).version == "1.1.0"

    def test_no_matching_range(self) -> None:
        with pytest.raises(NoMatchingVersion):
            resolve("^5", ["1.0.0", "2.0.0"])

    def test_invalid_constraint_raises(self) -> None:
        with pytest.raises(InvalidConstraintSyntax):
            resolve("^^1", ["1.0.0"])

    def test_tie_break_is_order_independent(self) -> None:
        tags = ["1.2.0", "v1.2.0"]
        a = resolve("latest", tags)
        b = resolve("latest", list(reversed(tags)))
        assert a == b
        assert a.version == "1.2.0"

    def test_accepts_parsed_constraint(self) -> None:
        parsed = parse_constraint("^1.0").unwrap()
        assert resolve(parsed, ["1.0.0", "1.4.2", "2.0.0"]) == resolve("^1.0", ["1.0.0", "1.4.2", "2.0.0"])
