"""
Property-based tests for issue aggregation using Hypothesis

The rollup rules must hold for any issue list, not only hand-built fixtures.
"""
from collections import Counter

import hypothesis.strategies as st
from hypothesis import given, settings

from site_audit.aggregator import (
    aggregate_issues,
    count_by_severity,
    deduplicate_issues,
    get_affected_pages,
    paginate,
)
from site_audit.schemas import Issue, PageResult
from site_audit.types import IssueSource, IssueType, severity_rank, source_priority

KEYS = [
    "audit.issues.noH1",
    "audit.issues.noFavicon",
    "audit.issues.noTitle",
    "a11y.image-alt",
    "a11y.color-contrast",
    "audit.issues.robotsTxtFound",
]
URLS = [f"https://example.com/{path}" for path in ("", "about", "blog", "contact", "pricing")]
SEVERITIES = ["error", "warning", "info", "passed"]

issue_strategy = st.builds(
    Issue,
    message=st.sampled_from(KEYS),
    severity=st.sampled_from(SEVERITIES),
    url=st.one_of(st.none(), st.sampled_from(URLS)),
    source=st.sampled_from([source.value for source in IssueSource]),
    type=st.sampled_from([issue_type.value for issue_type in IssueType]),
    device=st.one_of(st.none(), st.sampled_from(["desktop", "mobile"])),
)
issue_lists = st.lists(issue_strategy, max_size=60)
page_lists = st.lists(st.sampled_from(URLS), unique=True).map(lambda urls: [PageResult(url=url) for url in urls])


class TestAggregationProperties:
    @given(issues=issue_lists)
    @settings(deadline=None)
    def test_every_issue_counted_once(self, issues):
        groups = aggregate_issues(issues)

        assert sum(group.count for group in groups) == len(issues)
        assert len(groups) == len({issue.message for issue in issues})
        assert len({group.key for group in groups}) == len(groups)

    @given(issues=issue_lists)
    @settings(deadline=None)
    def test_group_takes_worst_severity(self, issues):
        for group in aggregate_issues(issues):
            members = [issue for issue in issues if issue.message == group.key]
            worst = min(severity_rank(issue.severity) for issue in members)
            assert severity_rank(group.severity) == worst

    @given(issues=issue_lists)
    @settings(deadline=None)
    def test_groups_sorted_by_severity_then_source(self, issues):
        order = [(severity_rank(g.severity), source_priority(g.source)) for g in aggregate_issues(issues)]

        assert order == sorted(order)

    @given(issues=issue_lists)
    @settings(deadline=None)
    def test_urls_distinct_in_first_seen_order(self, issues):
        for group in aggregate_issues(issues):
            expected = []
            for issue in issues:
                if issue.message == group.key and issue.url and issue.url not in expected:
                    expected.append(issue.url)
            assert group.urls == expected

    @given(issues=issue_lists)
    @settings(deadline=None)
    def test_device_merges_to_both(self, issues):
        for group in aggregate_issues(issues):
            devices = {issue.device for issue in issues if issue.message == group.key and issue.device}
            if len(devices) > 1:
                assert group.device == "both"
            elif devices:
                assert group.device == devices.pop()
            else:
                assert group.device is None

    @given(issues=issue_lists, page_size=st.integers(min_value=1, max_value=10))
    @settings(deadline=None)
    def test_pages_cover_all_groups(self, issues, page_size):
        groups = aggregate_issues(issues)
        first = paginate(groups, 1, page_size)

        collected = []
        for number in range(1, first.pages + 1):
            collected.extend(paginate(groups, number, page_size).items)

        assert collected == groups
        assert paginate(groups, first.pages + 1, page_size).items == []


class TestDrillDownProperties:
    @given(issues=issue_lists, pages=page_lists, key=st.sampled_from(KEYS))
    @settings(deadline=None)
    def test_affected_pages(self, issues, pages, key):
        affected = get_affected_pages(issues, pages, key)
        hit = {issue.url for issue in issues if issue.message == key and issue.url}

        if hit:
            assert [page.url for page in affected] == [page.url for page in pages if page.url in hit]
        else:
            assert affected == pages

    @given(issues=issue_lists)
    @settings(deadline=None)
    def test_severity_counts_match_input(self, issues):
        counts = count_by_severity(issues)
        expected = Counter(issue.severity for issue in issues)

        assert counts.errors == expected["error"]
        assert counts.warnings == expected["warning"]
        assert counts.info == expected["info"]
        assert counts.passed == expected["passed"]
        assert counts.errors + counts.warnings + counts.info + counts.passed == len(issues)

    @given(issues=issue_lists)
    @settings(deadline=None)
    def test_dedup_keeps_first_per_message_and_url(self, issues):
        unique = deduplicate_issues(issues)
        slots = [(issue.message, issue.url) for issue in unique]

        assert len(slots) == len(set(slots))
        assert set(slots) == {(issue.message, issue.url) for issue in issues}
        assert deduplicate_issues(unique) == unique
