"""Tests for email template rendering."""

from teamspark.jobs.templates import TEMPLATE_DIR, render_email


def test_templates_ship_with_package():
    names = {path.name for path in TEMPLATE_DIR.glob("*.html")}
    assert {"base.html", "welcome.html", "team-report.html", "kudos-notification.html"} <= names


def test_welcome_defaults():
    html = render_email("welcome", {})
    assert "Hi there" in html
    assert "your team" in html


def test_values_are_escaped():
    html = render_email("kudos-notification", {"sender_name": "Ada", "message": "<script>x</script>"})
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "Ada sent you kudos" in html


def test_team_report():
    html = render_email(
        "team-report",
        {
            "report_type": "weekly",
            "range_start": "2024-03-03",
            "range_end": "2024-03-10",
            "metrics": {"kudos_count": 12, "checkins_count": 4, "active_users": 3, "total_users": 4, "engagement_rate": 75.0},
        },
    )
    assert "weekly team report for 2024-03-03 to 2024-03-10" in html
    assert "75.0%" in html
    assert "3 of 4" in html


def test_missing_template_falls_back_to_base():
    html = render_email("does-not-exist", {"title": "Notice", "content": "Hello"})
    assert "<title>Notice</title>" in html
    assert "Hello" in html
