"""Telegram inline keyboard helpers.

The checkout engine describes keyboards as rows of (label, action) pairs.
This module turns them into aiogram markup: an action starting with
https:// becomes a URL button, anything else is callback data.

Telegram Bot API (InlineKeyboardButton.style):
  - "danger"  (red)
  - "success" (green)
  - "primary" (blue)
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

STYLE_DANGER = "danger"
STYLE_SUCCESS = "success"
STYLE_PRIMARY = "primary"

_ALLOWED_STYLES = {STYLE_DANGER, STYLE_SUCCESS, STYLE_PRIMARY}

URL_ACTION_PREFIX = "https://"
CALLBACK_DATA_MAX_BYTES = 64

# Callback prefixes that get a colour hint.
_ACTION_STYLES = (
    ("menu:cancel", STYLE_DANGER),
    ("status:", STYLE_SUCCESS),
    ("pay:retry", STYLE_PRIMARY),
)


def _normalize_style(style: str | None) -> str | None:
    if not style:
        return None
    value = str(style).strip().lower()
    return value if value in _ALLOWED_STYLES else None


def style_for_action(action: str) -> str | None:
    for prefix, style in _ACTION_STYLES:
        if action.startswith(prefix):
            return style
    return None


def ikb(text: str, action: str, *, style: str | None = None) -> InlineKeyboardButton:
    """One button: URL for https:// actions, callback otherwise."""
    kwargs: dict[str, object] = {"text": str(text)}
    if action.startswith(URL_ACTION_PREFIX):
        kwargs["url"] = action
    else:
        if len(action.encode("utf-8")) > CALLBACK_DATA_MAX_BYTES:
            raise ValueError(f"callback data too long: {action!r}")
        kwargs["callback_data"] = action

    normalized_style = _normalize_style(style or style_for_action(action))
    if normalized_style:
        kwargs["style"] = normalized_style

    try:
        return InlineKeyboardButton(**kwargs)  # type: ignore[arg-type]
    except Exception:
        # Older aiogram types may not accept `style`.
        kwargs.pop("style", None)
        return InlineKeyboardButton(**kwargs)  # type: ignore[arg-type]


def build_inline_keyboard(rows: Iterable[Sequence[tuple[str, str]]] | None) -> InlineKeyboardMarkup | None:
    if not rows:
        return None
    inline_keyboard = [[ikb(label, action) for label, action in row] for row in rows if row]
    if not inline_keyboard:
        return None
    return InlineKeyboardMarkup(inline_keyboard=inline_keyboard)
