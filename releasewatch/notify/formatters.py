"""Email rendering (subject, HTML and plain text) with Jinja2 templates."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape
from pydantic import ValidationError

from releasewatch.config import settings
from releasewatch.digest.payload import DigestPayload, ReminderPayload
from releasewatch.notify.transport import EmailValidationError

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

UPDATE_TYPE_COLORS = {
    "major": "#dc2626",
    "minor": "#2563eb",
    "patch": "#16a34a",
}

SUBJECT_SUFFIX = {
    "daily": "today",
    "weekly": "for your tracked software",
    "monthly": "this month",
}

FREQUENCY_TITLES = {
    "daily": "Daily Digest",
    "weekly": "Weekly Digest",
    "monthly": "Monthly Digest",
}

REMINDER_FALLBACK_SUBJECT = "Your software tracker is feeling lonely"


@dataclass
class RenderedEmail:
    """A rendered message ready for the transport."""

    subject: str
    html: str
    text: str


def _format_date(value) -> str:
    if not value:
        return "recently"
    return value.strftime("%b %d, %Y")


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _user_name(email: Optional[str]) -> str:
    return (email or "").split("@")[0] or "there"


def build_subject(payload: DigestPayload) -> str:
    """Subject line for a digest."""
    if not payload.has_updates:
        return "All quiet on the version front"
    count = max(payload.total_updates, len(payload.updates))
    suffix = SUBJECT_SUFFIX.get(payload.frequency, SUBJECT_SUFFIX["weekly"])
    return f"{_plural(count, 'update')} {suffix}"


def build_headers(queue_id: int, user_id: int, app_url: Optional[str] = None) -> Dict[str, str]:
    """Provider headers: entity reference plus one-click unsubscribe."""
    app_url = app_url or settings.app_url
    return {
        "X-Entity-Ref-ID": str(queue_id),
        "List-Unsubscribe": f"<{app_url}/unsubscribe?uid={user_id}>",
        "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
    }


class DigestRenderer:
    """Renders queue item payloads into emails."""

    def __init__(self, template_dir: Optional[Path] = None, app_url: Optional[str] = None):
        self.app_url = app_url or settings.app_url
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir or TEMPLATES_DIR)),
            autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["format_date"] = _format_date
        self.env.filters["plural"] = _plural

    def render(self, item: Any) -> RenderedEmail:
        """
        Render a queue item.

        Args:
            item: Object with user_id, email, email_type and payload (a QueueItem)

        Returns:
            RenderedEmail

        Raises:
            EmailValidationError: Payload is malformed or a template fails
        """
        if item.email_type == "no_tracking_reminder":
            return self._render_reminder(item)

        try:
            payload = DigestPayload.model_validate(item.payload or {})
        except ValidationError as e:
            raise EmailValidationError(f"Malformed digest payload: {e.error_count()} error(s)") from e

        context = {
            "payload": payload,
            "user_name": _user_name(item.email),
            "user_id": item.user_id,
            "app_url": self.app_url,
            "title": FREQUENCY_TITLES.get(payload.frequency, "Digest"),
            "type_colors": UPDATE_TYPE_COLORS,
        }
        html, text = self._render_pair("digest", context)
        return RenderedEmail(subject=build_subject(payload), html=html, text=text)

    def _render_reminder(self, item: Any) -> RenderedEmail:
        try:
            payload = ReminderPayload.model_validate(item.payload or {})
        except ValidationError as e:
            raise EmailValidationError(f"Malformed reminder payload: {e.error_count()} error(s)") from e

        context = {
            "payload": payload,
            "user_name": _user_name(item.email),
            "user_id": item.user_id,
            "app_url": self.app_url,
            "title": "Start Tracking",
        }
        html, text = self._render_pair("no_tracking_reminder", context)
        return RenderedEmail(
            subject=payload.subject_line or REMINDER_FALLBACK_SUBJECT, html=html, text=text
        )

    def _render_pair(self, name: str, context: Dict[str, Any]) -> Tuple[str, str]:
        try:
            html = self.env.get_template(f"{name}.html").render(**context)
            text = self.env.get_template(f"{name}.txt").render(**context)
        except TemplateError as e:
            raise EmailValidationError(f"Template rendering failed: {e}") from e
        return html, text
