"""Tests for label selectors, conditions and duplicate detection."""

from __future__ import annotations

import pytest

from chartfleet.model import Release
from chartfleet.selector import (
    LabelFilter,
    SelectorError,
    check_duplicates,
    condition_enabled,
    mark_excluded_releases,
    releases_with_labels,
    select_releases,
)


class TestLabelFilter:
    def test_parse(self) -> None:
        lf = LabelFilter.parse("tier=frontend,env!=dev")
        assert lf.positive_labels == [("tier", "frontend")]
        assert lf.negative_labels == [("env", "dev")]

    def test_malformed(self) -> None:
        with pytest.raises(SelectorError, match="malformed label: tier. Expected label in form k=v or k!=v"):
            LabelFilter.parse("tier")

    def test_match(self) -> None:
        r = Release(name="web", labels={"tier": "frontend", "env": "prod"})
        assert LabelFilter.parse("tier=frontend").match(r)
        assert LabelFilter.parse("tier=frontend,env!=dev").match(r)
        assert not LabelFilter.parse("env!=prod").match(r)
        assert not LabelFilter.parse("tier=backend").match(r)


class TestBuiltinLabels:
    def test_name_namespace_chart(self) -> None:
        r = Release(name="web", namespace="apps", chart="stable/nginx", labels={"name": "ignored"})
        (labeled,) = releases_with_labels([r], {"team": "core"})
        assert labeled.labels == {"team": "core", "name": "web", "namespace": "apps", "chart": "nginx"}
        assert r.labels == {"name": "ignored"}

    def test_release_labels_override_common(self) -> None:
        r = Release(name="web", labels={"team": "edge"})
        (labeled,) = releases_with_labels([r], {"team": "core"})
        assert labeled.labels["team"] == "edge"


class TestConditionEnabled:
    def test_no_condition(self) -> None:
        assert condition_enabled(Release(name="a"), {})

    def test_enabled(self) -> None:
        r = Release(name="a", condition="ingress.enabled")
        assert condition_enabled(r, {"ingress": {"enabled": True}})
        assert not condition_enabled(r, {"ingress": {"enabled": False}})

    def test_non_bool_is_false(self) -> None:
        r = Release(name="a", condition="ingress.enabled")
        assert not condition_enabled(r, {"ingress": {"enabled": "yes"}})
        assert not condition_enabled(r, {"ingress": {}})

    def test_must_end_in_enabled(self) -> None:
        with pytest.raises(SelectorError, match="must be in the form 'foo.enabled'"):
            condition_enabled(Release(name="a", condition="ingress.on"), {})

    def test_missing_intermediate_key(self) -> None:
        r = Release(name="a", condition="a.b.enabled")
        with pytest.raises(SelectorError, match="values field '.a' not found"):
            condition_enabled(r, {})

    def test_intermediate_not_a_map(self) -> None:
        r = Release(name="a", condition="a.b.enabled")
        with pytest.raises(SelectorError, match="values field '.a.b' is not a map"):
            condition_enabled(r, {"a": {"b": 1}})


class TestSelection:
    def releases(self):
        return [
            Release(name="db", labels={"tier": "data"}),
            Release(name="api", labels={"tier": "backend"}, needs=["db"]),
            Release(name="web", labels={"tier": "frontend"}, needs=["api"]),
            Release(name="extra", condition="extra.enabled"),
        ]

    def test_any_selector_matches(self) -> None:
        picked = select_releases(self.releases(), ["tier=data", "tier=frontend"], {"extra": {"enabled": False}})
        assert [r.name for r in picked] == ["db", "web"]

    def test_no_selectors_keeps_everything_enabled(self) -> None:
        picked = select_releases(self.releases(), [], {"extra": {"enabled": False}})
        assert [r.name for r in picked] == ["db", "api", "web"]

    def test_returns_original_objects(self) -> None:
        releases = self.releases()
        picked = select_releases(releases, ["name=db"], {"extra": {"enabled": True}})
        assert picked[0] is releases[0]

    def test_transitive_needs(self) -> None:
        marked = mark_excluded_releases(
            releases_with_labels(self.releases()),
            ["name=web"],
            {"extra": {"enabled": True}},
            include_transitive_needs=True,
        )
        kept = [m.release.name for m in marked if not m.filtered]
        assert kept == ["db", "api", "web"]

    def test_bad_condition_names_release(self) -> None:
        releases = [Release(name="broken", condition="nope")]
        with pytest.raises(SelectorError, match="failed to parse condition in release broken"):
            select_releases(releases, [])


class TestCheckDuplicates:
    def test_duplicate(self) -> None:
        releases = [Release(name="a", namespace="ns"), Release(name="a", namespace="ns")]
        with pytest.raises(SelectorError) as exc:
            check_duplicates(releases)
        assert str(exc.value) == (
            'duplicate release "a" found in namespace "ns": '
            'there were 2 releases named "a" matching specified selector'
        )

    def test_same_name_different_namespace(self) -> None:
        check_duplicates([Release(name="a", namespace="x"), Release(name="a", namespace="y")])
