"""Rendering helpers for subscription notification emails."""
from __future__ import annotations

import html
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple


_TEMPLATE_PATH = Path(__file__).resolve().parent / "templates"
_PLACEHOLDER_PATTERN = re.compile(r"{{\s*(\w+)\s*}}")


def _load_template(template: str) -> str:
    path = _TEMPLATE_PATH / template
    return path.read_text(encoding="utf-8")


def _render_template(template: str, context: Mapping[str, Any], *, escape: bool = False) -> str:
    source = _load_template(template)

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = context.get(key, "")
        text = "" if value is None else str(value)
        return html.escape(text) if escape else text

    return _PLACEHOLDER_PATTERN.sub(_replace, source)


def _render_subject_body(base_template: str, context: Mapping[str, Any]) -> Tuple[str, str, str]:
    subject = _render_template(f"{base_template}_subject.txt.j2", context)
    text_body = _render_template(f"{base_template}_body.txt.j2", context)
    html_body = _render_template(f"{base_template}_body.html.j2", context, escape=True)
    return subject.strip(), text_body.strip(), html_body.strip()


def render_subscription_notification(
    kind: Any, context: Dict[str, Any]
) -> Tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for a subscription notice."""

    return _render_subject_body(str(getattr(kind, "value", kind)), context)


__all__ = ["render_subscription_notification"]
