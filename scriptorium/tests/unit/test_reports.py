from __future__ import annotations

from datetime import datetime, timezone

from scriptorium.core.config import SUBSTRATE_MEMORY, Settings
from scriptorium.domain.models import User
from scriptorium.services.reports import locate_annotations, render_annotated, render_report
from scriptorium.services.usage import UsageSnapshot, month_bounds, monthly_limit_for


def _user(role: str = "user", tier: str = "free") -> User:
    return User(id="u1", email="a@b.co", role=role, tier=tier, created_at=0, updated_at=0)


def test_report_escapes_agent_text() -> None:
    html = render_report(
        report_id="abcd1234",
        title="Rain & <Letters>",
        developmental={"overallScore": 7, "summary": "<script>alert(1)</script>"},
        line={"issues": [{"original": "very very", "suggestion": "very"}]},
        copy={"errors": []},
        generated_at=1_700_000_000,
    )
    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;" in html
    assert "Rain &amp; &lt;Letters&gt;" in html
    assert "1 line-editing issues, 0 copy-editing errors" in html
    assert "No copy-editing errors found." in html


def test_annotations_skip_missing_and_overlapping_phrases() -> None:
    text = "The rain had not stopped for three days."
    line = {"issues": [{"original": "had not stopped", "suggestion": "hadn't stopped"}, {"original": "absent"}]}
    copy = {"errors": [{"original": "not", "correction": "never"}, {"original": "days", "correction": "days"}]}

    annotations = locate_annotations(text, line, copy)
    assert [(a.source, text[a.start : a.end]) for a in annotations] == [("line", "had not stopped"), ("copy", "days")]


def test_annotated_html_marks_and_escapes() -> None:
    html = render_annotated(
        report_id="abcd1234",
        title=None,
        text="Tom & Jerry <ran> fast",
        line={"issues": [{"original": "fast", "suggestion": "\"quickly\""}]},
        copy={},
    )
    assert "Tom &amp; Jerry &lt;ran&gt; " in html
    assert '<mark class="line" title="&quot;quickly&quot;">fast</mark>' in html
    assert "1 highlighted issues" in html
    assert "Annotated Manuscript" in html


def test_month_bounds_cover_the_calendar_month() -> None:
    mid_march = datetime(2024, 3, 15, 12, tzinfo=timezone.utc).timestamp()
    start, end = month_bounds(mid_march)
    assert start == int(datetime(2024, 3, 1, tzinfo=timezone.utc).timestamp())
    assert end == int(datetime(2024, 4, 1, tzinfo=timezone.utc).timestamp())

    december = datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc).timestamp()
    assert month_bounds(december)[1] == int(datetime(2025, 1, 1, tzinfo=timezone.utc).timestamp())


def test_monthly_limits_by_tier_and_role() -> None:
    settings = Settings(_env_file=None, runtime_substrate=SUBSTRATE_MEMORY)
    assert monthly_limit_for(_user(tier="free"), settings) == 1
    assert monthly_limit_for(_user(tier="pro"), settings) == 10
    assert monthly_limit_for(_user(tier="enterprise"), settings) is None
    assert monthly_limit_for(_user(role="admin", tier="free"), settings) is None


def test_usage_snapshot_remaining() -> None:
    snapshot = UsageSnapshot("u1", 0, 10, count=3, limit=2)
    assert snapshot.remaining == 0
    assert snapshot.exhausted
    unlimited = UsageSnapshot("u1", 0, 10, count=50, limit=None)
    assert unlimited.remaining is None
    assert not unlimited.exhausted
    assert unlimited.public()["limit"] is None
