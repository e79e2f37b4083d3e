"""Rendering helpers for billing email notifications."""
from __future__ import annotations

import html
import re
from pathlib import Path
from typing import Any, Callable, Mapping, Tuple

_TEMPLATE_PATH = Path(__file__).resolve().parent / "templates"
_PLACEHOLDER_PATTERN = re.compile(r"{{\s*(\w+)\s*}}")


def _load_template(template: str) -> str:
    path = _TEMPLATE_PATH / template
    return path.read_text(encoding="utf-8")


def _render_template(
    template: str,
    context: Mapping[str, Any],
    *,
    escape: Callable[[str], str] = lambda value: value,
) -> str:
    source = _load_template(template)

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = context.get(key, "")
        return "" if value is None else escape(str(value))

    return _PLACEHOLDER_PATTERN.sub(_replace, source)


def render_subject_body(base_template: str, context: Mapping[str, Any]) -> Tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for ``base_template``.

    Values substituted into the HTML body are escaped; subject and text body
    are rendered verbatim.
    """

    subject = _render_template(f"{base_template}_subject.txt.j2", context)
    text_body = _render_template(f"{base_template}_body.txt.j2", context)
    html_body = _render_template(f"{base_template}_body.html.j2", context, escape=html.escape)
    return " ".join(subject.split()), text_body.strip(), html_body.strip()


__all__ = ["render_subject_body"]
