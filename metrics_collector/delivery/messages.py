"""
Notification message formatting.

Messages use Telegram's HTML subset, which also renders fine in email.
"""

import html
from datetime import datetime
from typing import Any


def format_duration(seconds: int) -> str:
    """45 -> '45s', 125 -> '2m 5s', 3780 -> '1h 3m'."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    minutes, remaining_seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s" if remaining_seconds else f"{minutes}m"

    hours, remaining_minutes = divmod(minutes, 60)
    return f"{hours}h {remaining_minutes}m" if remaining_minutes else f"{hours}h"


def _stat(stats: Any, name: str, default=0):
    if isinstance(stats, dict):
        return stats.get(name, default)
    return getattr(stats, name, default)


def build_start_message(service_name: str, now: datetime = None) -> str:
    now = now or datetime.now()
    return f"🚀 <b>{html.escape(service_name.upper())}</b> started\n⏰ {now:%H:%M:%S}"


def build_success_message(service_name: str, stats: Any, duration: int) -> str:
    warnings = _stat(stats, "warnings", []) or []
    if warnings:
        return build_warning_message(service_name, stats, warnings, duration)

    lines = [f"✅ <b>{html.escape(service_name.upper())}</b> completed"]
    if _stat(stats, "inserted"):
        lines.append(f"📝 Inserted: <b>{_stat(stats, 'inserted'):,}</b>")
    if _stat(stats, "updated"):
        lines.append(f"🔄 Updated: <b>{_stat(stats, 'updated'):,}</b>")
    if _stat(stats, "processed"):
        lines.append(f"📊 Processed: <b>{_stat(stats, 'processed'):,}</b>")
    if _stat(stats, "errors"):
        lines.append(f"❗ Record errors: <b>{_stat(stats, 'errors'):,}</b>")
    lines.append(f"⏱️ Time: {format_duration(duration)}")
    return "\n".join(lines)


def build_warning_message(service_name: str, stats: Any, warnings, duration: int) -> str:
    lines = [f"⚠️ <b>{html.escape(service_name.upper())}</b> completed with warnings"]
    if _stat(stats, "inserted"):
        lines.append(f"📝 Inserted: <b>{_stat(stats, 'inserted'):,}</b>")
    lines.append("🟡 Warnings:")
    lines.extend(f"  • {html.escape(str(w))}" for w in warnings)
    lines.append(f"⏱️ Time: {format_duration(duration)}")
    return "\n".join(lines)


def build_error_message(service_name: str, error: Exception, duration: int) -> str:
    return (
        f"❌ <b>{html.escape(service_name.upper())}</b> failed\n"
        f"💥 Error: <code>{html.escape(str(error))}</code>\n"
        f"⏱️ Time until failure: {format_duration(duration)}"
    )
