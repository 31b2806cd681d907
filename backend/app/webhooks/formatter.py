# backend/app/webhooks/formatter.py

"""
通知イベントをチャット Webhook 形式の JSON ボディに整形するフォーマッタ。

出力形式:
    {
        "username": ...,
        "avatar_url": ...,
        "timestamp": ISO8601,
        "embeds": [embed]      # include_embeds=True の場合
        "content": "..."       # include_embeds=False の場合
    }

バッチでまとめる際は embeds を連結するので、combinable_field = "embeds"。
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from .schemas import NotificationType, WebhookSettings

_TEMPLATE_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

_MODERATION_STYLE = {
    "ban": ("🔨", 0xFF0055),
    "kick": ("👢", 0xFFAA00),
    "mute": ("🔇", 0x8B5CF6),
    "warn": ("⚠️", 0xFFAA00),
}

_SECURITY_STYLE = {
    "spam": ("🛡️", "Spam Detected", 0xFF0055),
    "raid": ("🚨", "Raid Alert", 0xFF0000),
}

_COLOR_JOIN = 0x00FF88
_COLOR_LEAVE = 0xFF0055
_COLOR_CONFIG = 0x8B5CF6
_COLOR_INFO = 0x00D9FF


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _mention_user(value: Any) -> Optional[str]:
    return f"<@{value}>" if value else None


def _mention_channel(value: Any) -> Optional[str]:
    return f"<#{value}>" if value else None


def _field(name: str, value: Any, inline: bool = True) -> Dict[str, Any]:
    return {"name": name, "value": str(value), "inline": inline}


def _drop_none(embed: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in embed.items() if v is not None}


def apply_template(template: Mapping[str, Any], data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    テンプレートの文字列値に含まれる {{field}} を data の値で置き換える。

    data に存在しない（または空の）フィールドは空文字になる。文字列以外の値はそのまま。
    """
    result: Dict[str, Any] = {}
    for key, value in template.items():
        if isinstance(value, str):
            result[key] = _TEMPLATE_PLACEHOLDER.sub(
                lambda m: str(data.get(m.group(1)) or ""), value
            )
        else:
            result[key] = value
    return result


class WebhookPayloadFormatter:
    """
    イベント種別ごとの embed を組み立てる。

    未知の event_type はタイトルに種別名、本文に data の JSON を入れた汎用 embed になる。
    """

    combinable_field = "embeds"

    def __init__(self, username: str = "Webhook Notifier", avatar_url: str = "") -> None:
        self._username = username
        self._avatar_url = avatar_url
        self._builders: Dict[str, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
            NotificationType.MODERATION_BAN.value: lambda d: self._moderation_embed("ban", d),
            NotificationType.MODERATION_KICK.value: lambda d: self._moderation_embed("kick", d),
            NotificationType.MODERATION_MUTE.value: lambda d: self._moderation_embed("mute", d),
            NotificationType.MODERATION_WARN.value: lambda d: self._moderation_embed("warn", d),
            NotificationType.SECURITY_SPAM.value: lambda d: self._security_embed("spam", d),
            NotificationType.SECURITY_RAID.value: lambda d: self._security_embed("raid", d),
            NotificationType.USER_JOIN.value: lambda d: self._user_activity_embed(True, d),
            NotificationType.USER_LEAVE.value: lambda d: self._user_activity_embed(False, d),
            NotificationType.CONFIG_CHANGE.value: self._config_change_embed,
            NotificationType.DAILY_SUMMARY.value: self._daily_summary_embed,
            NotificationType.CUSTOM.value: self._custom_embed,
        }

    # ---- 公開 API ------------------------------------------------------

    def format(
        self,
        event_type: str,
        data: Mapping[str, Any],
        settings: Optional[WebhookSettings] = None,
    ) -> Dict[str, Any]:
        settings = settings or WebhookSettings()
        data = data or {}

        payload: Dict[str, Any] = {
            "username": data.get("username") or self._username,
            "timestamp": _now_iso(),
        }
        avatar_url = data.get("avatar_url") or self._avatar_url
        if avatar_url:
            payload["avatar_url"] = avatar_url

        if not settings.include_embeds:
            payload["content"] = self.format_plain_text(event_type, data)
            return payload

        embed = self.build_embed(event_type, data)
        if settings.custom_template:
            embed.update(apply_template(settings.custom_template, data))
        payload["embeds"] = [embed]
        return payload

    def build_embed(self, event_type: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        builder = self._builders.get(event_type)
        if builder is None:
            return self._custom_embed(
                {"title": event_type, "description": json.dumps(dict(data), default=str)}
            )
        return builder(data)

    def format_plain_text(self, event_type: str, data: Mapping[str, Any]) -> str:
        target = _mention_user(data.get("target")) or "Unknown"
        user = _mention_user(data.get("user")) or "Unknown"
        reason = data.get("reason") or "No reason"

        texts = {
            NotificationType.MODERATION_BAN.value: f"🔨 **Ban**: {target} - {reason}",
            NotificationType.MODERATION_KICK.value: f"👢 **Kick**: {target} - {reason}",
            NotificationType.MODERATION_MUTE.value: f"🔇 **Mute**: {target} - {reason}",
            NotificationType.MODERATION_WARN.value: f"⚠️ **Warn**: {target} - {reason}",
            NotificationType.SECURITY_SPAM.value: (
                f"🛡️ **Spam Detected**: {data.get('description') or 'Suspicious activity detected'}"
            ),
            NotificationType.SECURITY_RAID.value: (
                f"🚨 **Raid Alert**: {data.get('description') or 'Possible raid detected'}"
            ),
            NotificationType.USER_JOIN.value: f"👋 **Join**: {user} joined the server",
            NotificationType.USER_LEAVE.value: f"🚪 **Leave**: {user} left the server",
            NotificationType.CONFIG_CHANGE.value: (
                f"⚙️ **Config Change**: {data.get('setting') or 'Unknown'} updated"
            ),
            NotificationType.DAILY_SUMMARY.value: (
                f"📊 **Daily Summary** for {data.get('date') or datetime.now(timezone.utc).date().isoformat()}"
            ),
            NotificationType.CUSTOM.value: data.get("description") or "Custom notification",
        }
        return texts.get(event_type, f"Notification: {event_type}")

    # ---- embed ビルダー -----------------------------------------------

    def _moderation_embed(self, action: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        icon, color = _MODERATION_STYLE[action]
        fields: List[Dict[str, Any]] = []
        target = _mention_user(data.get("target"))
        if target:
            fields.append(_field("Target", target))
        moderator = _mention_user(data.get("moderator"))
        if moderator:
            fields.append(_field("Moderator", moderator))
        fields.append(_field("Duration", data.get("duration") or "Permanent"))

        return {
            "title": f"{icon} {action.capitalize()} Action",
            "description": data.get("reason") or "No reason provided",
            "color": color,
            "fields": fields,
            "timestamp": _now_iso(),
            "footer": {"text": f"Case ID: {data.get('case_id') or 'N/A'}"},
        }

    def _security_embed(self, alert: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        icon, title, color = _SECURITY_STYLE[alert]
        fields = [
            _field("Channel", _mention_channel(data.get("channel")) or "Multiple"),
            _field("Users Affected", data.get("affected_users") or "Unknown"),
            _field("Severity", data.get("severity") or "Medium"),
        ]
        evidence = data.get("evidence")
        if evidence:
            fields.append(_field("Evidence", str(evidence)[:1000], inline=False))

        return {
            "title": f"{icon} {title}",
            "description": data.get("description") or "Security alert triggered",
            "color": color,
            "fields": fields,
            "timestamp": _now_iso(),
        }

    def _user_activity_embed(self, joined: bool, data: Mapping[str, Any]) -> Dict[str, Any]:
        avatar = data.get("user_avatar_url")
        return _drop_none(
            {
                "title": "👋 User Joined" if joined else "🚪 User Left",
                "color": _COLOR_JOIN if joined else _COLOR_LEAVE,
                "fields": [
                    _field("User", _mention_user(data.get("user")) or "Unknown"),
                    _field("Account Age", data.get("account_age") or "Unknown"),
                    _field("Member Count", data.get("member_count") or "N/A"),
                ],
                "thumbnail": {"url": avatar} if avatar else None,
                "timestamp": _now_iso(),
                "footer": {"text": f"User ID: {data.get('user_id') or 'Unknown'}"},
            }
        )

    def _config_change_embed(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        moderator = _mention_user(data.get("moderator")) or "Unknown"
        return {
            "title": "⚙️ Server Configuration Changed",
            "description": f"Configuration setting updated by {moderator}",
            "color": _COLOR_CONFIG,
            "fields": [
                _field("Setting", data.get("setting") or "Unknown"),
                _field("Old Value", data.get("old_value") or "N/A"),
                _field("New Value", data.get("new_value") or "N/A"),
            ],
            "timestamp": _now_iso(),
        }

    def _daily_summary_embed(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        date = data.get("date") or datetime.now(timezone.utc).date().isoformat()
        counters = (
            ("👥 New Members", "new_members"),
            ("🚪 Members Left", "members_left"),
            ("🔨 Bans", "bans"),
            ("⚠️ Warns", "warnings"),
            ("💬 Messages", "message_count"),
            ("🛡️ Spam Detections", "spam_detections"),
        )
        return {
            "title": "📊 Daily Activity Summary",
            "description": f"Summary for {date}",
            "color": _COLOR_INFO,
            "fields": [_field(label, data.get(key) or 0) for label, key in counters],
            "timestamp": _now_iso(),
            "footer": {"text": f"Server: {data.get('server_name') or 'Unknown'}"},
        }

    def _custom_embed(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        thumbnail = data.get("thumbnail")
        image = data.get("image")
        footer = data.get("footer")
        return _drop_none(
            {
                "title": data.get("title") or "Custom Notification",
                "description": data.get("description") or "",
                "color": data.get("color") or _COLOR_INFO,
                "fields": list(data.get("fields") or []),
                "thumbnail": {"url": thumbnail} if thumbnail else None,
                "image": {"url": image} if image else None,
                "timestamp": _now_iso(),
                "footer": {"text": footer} if footer else None,
            }
        )
