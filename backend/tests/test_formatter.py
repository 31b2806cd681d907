# backend/tests/test_formatter.py

from app.webhooks.formatter import WebhookPayloadFormatter, apply_template
from app.webhooks.schemas import WebhookSettings


def test_moderation_embed_layout() -> None:
    formatter = WebhookPayloadFormatter(username="notifier", avatar_url="https://cdn.example.com/a.png")
    payload = formatter.format(
        "moderation_ban",
        {"target": "42", "moderator": "7", "reason": "spam", "case_id": "C-1"},
        WebhookSettings(),
    )

    assert payload["username"] == "notifier"
    assert payload["avatar_url"] == "https://cdn.example.com/a.png"
    assert "timestamp" in payload
    assert len(payload["embeds"]) == 1

    embed = payload["embeds"][0]
    assert embed["title"] == "🔨 Ban Action"
    assert embed["description"] == "spam"
    assert embed["color"] == 0xFF0055
    names = [f["name"] for f in embed["fields"]]
    assert names == ["Target", "Moderator", "Duration"]
    assert embed["fields"][0]["value"] == "<@42>"
    assert embed["footer"]["text"] == "Case ID: C-1"


def test_moderation_embed_omits_unknown_people() -> None:
    embed = WebhookPayloadFormatter().build_embed("moderation_kick", {})
    assert [f["name"] for f in embed["fields"]] == ["Duration"]
    assert embed["description"] == "No reason provided"


def test_security_embed_truncates_evidence() -> None:
    embed = WebhookPayloadFormatter().build_embed(
        "security_raid", {"channel": "99", "evidence": "x" * 2000}
    )
    assert embed["title"] == "🚨 Raid Alert"
    assert embed["color"] == 0xFF0000
    evidence = [f for f in embed["fields"] if f["name"] == "Evidence"][0]
    assert len(evidence["value"]) == 1000
    assert evidence["inline"] is False


def test_user_activity_and_summary_embeds() -> None:
    formatter = WebhookPayloadFormatter()
    join = formatter.build_embed("user_join", {"user": "5", "user_id": "5"})
    assert join["title"] == "👋 User Joined"
    assert join["color"] == 0x00FF88
    assert "thumbnail" not in join

    summary = formatter.build_embed("daily_summary", {"date": "2024-01-01", "bans": 3})
    assert summary["description"] == "Summary for 2024-01-01"
    bans = [f for f in summary["fields"] if f["name"] == "🔨 Bans"][0]
    assert bans["value"] == "3"


def test_unknown_event_type_falls_back_to_generic_embed() -> None:
    embed = WebhookPayloadFormatter().build_embed("deploy_finished", {"version": "1.2"})
    assert embed["title"] == "deploy_finished"
    assert '"version": "1.2"' in embed["description"]


def test_plain_text_mode_uses_content() -> None:
    payload = WebhookPayloadFormatter().format(
        "moderation_warn",
        {"target": "42", "reason": "rude"},
        WebhookSettings(include_embeds=False),
    )
    assert "embeds" not in payload
    assert payload["content"] == "⚠️ **Warn**: <@42> - rude"


def test_custom_template_is_applied_to_embed() -> None:
    settings = WebhookSettings(
        custom_template={"title": "Alert for {{target}}", "color": 0x123456}
    )
    payload = WebhookPayloadFormatter().format("moderation_ban", {"target": "42"}, settings)
    embed = payload["embeds"][0]
    assert embed["title"] == "Alert for 42"
    assert embed["color"] == 0x123456


def test_apply_template_replaces_missing_fields_with_empty_string() -> None:
    result = apply_template({"title": "{{a}}-{{b}}", "n": 1}, {"a": "x"})
    assert result == {"title": "x-", "n": 1}


def test_combinable_field_is_embeds() -> None:
    assert WebhookPayloadFormatter.combinable_field == "embeds"
