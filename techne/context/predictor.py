"""Component requirement prediction.

Predicts which optional UI components a request needs so the assembler
can load those files instead of the whole component library. Pattern
matching only (no LLM); imprecision is recovered at run time through the
load_component tool.
"""

from __future__ import annotations

import logging
import re

from techne.context.schemas import Prediction

logger = logging.getLogger(__name__)

MAX_COMPONENTS = 8

# Loaded when nothing in the request matches
DEFAULT_COMPONENTS = ["button", "card"]

# Coarse app type detection, most specific first
_APP_TYPE_PATTERNS = [
    ("todo", r"\b(to-?dos?|task (list|manager|tracker)|tasks?|checklist)\b"),
    ("ecommerce", r"\b(e-?commerce|shop|store|products?|cart|checkout)\b"),
    ("chat", r"\b(chat|messag(e|es|ing)|messenger|conversations?)\b"),
    ("blog", r"\b(blog|articles?|posts?)\b"),
    ("form", r"\b(form|survey|questionnaire|sign-?up sheet)\b"),
    ("analytics", r"\b(analytics|charts?|graphs?|reports?)\b"),
    ("dashboard", r"\b(dashboard|admin|metrics|back-?office)\b"),
    ("saas", r"\b(saas|software as a service|subscriptions?|pricing)\b"),
    ("portfolio", r"\b(portfolio|resume|cv)\b"),
    ("landing", r"\b(landing|homepage|website|agency|marketing page)\b"),
]

# Components implied by each app type, in load priority order
APP_TYPE_COMPONENTS: dict[str, list[str]] = {
    "todo": ["input", "checkbox", "button", "card"],
    "ecommerce": ["card", "button", "badge", "input", "select", "sheet"],
    "chat": ["input", "button", "card", "avatar", "scroll-area"],
    "blog": ["card", "button", "badge", "avatar", "separator"],
    "form": ["form", "input", "label", "button", "select", "checkbox", "textarea"],
    "analytics": ["card", "chart", "select", "tabs", "table"],
    "dashboard": ["card", "table", "badge", "button", "tabs", "avatar"],
    "saas": ["button", "card", "badge", "tabs", "accordion"],
    "portfolio": ["card", "button", "badge", "separator"],
    "landing": ["button", "card", "badge", "accordion", "separator"],
}

# Phrase -> implied components, applied on top of the app type set
KEYWORD_TRIGGERS: list[tuple[str, list[str]]] = [
    (r"\bcrud\b", ["form", "table", "button", "dialog", "input"]),
    (r"\b(log ?in|sign ?in|sign ?up|auth\w*|password)\b", ["form", "input", "label", "button"]),
    (r"\bsearch\w*\b", ["input", "command"]),
    (r"\b(modal|popup|dialog)s?\b", ["dialog"]),
    (r"\b(drawer|side panel)s?\b", ["sheet"]),
    (r"\b(tables?|spreadsheet|data grid)\b", ["table"]),
    (r"\b(notifications?|toasts?)\b", ["toast"]),
    (r"\b(alerts?|warnings?)\b", ["alert"]),
    (r"\b(settings|preferences|dark mode|theme toggle)\b", ["switch", "select"]),
    (r"\b(calendar|schedul\w*|date picker|due dates?)\b", ["calendar", "popover"]),
    (r"\b(dropdowns?|context menu)\b", ["dropdown-menu"]),
    (r"\b(profiles?|avatars?|team members?)\b", ["avatar"]),
    (r"\btabs?\b", ["tabs"]),
    (r"\b(progress|wizard|steps?|onboarding)\b", ["progress"]),
    (r"\btooltips?\b", ["tooltip"]),
    (r"\b(slider|volume|range)\b", ["slider"]),
    (r"\b(faq|accordion)\b", ["accordion"]),
    (r"\b(kanban|board)\b", ["card", "badge", "dropdown-menu"]),
    (r"\b(gallery|carousel|slideshow)\b", ["carousel", "dialog"]),
    (r"\b(payments?|credit card)\b", ["form", "input"]),
    (r"\b(priority|priorities|tags?|labels?|categor(y|ies))\b", ["badge"]),
    (r"\b(comments?|notes?|descriptions?)\b", ["textarea"]),
    (r"\b(radio|options?)\b", ["radio-group"]),
    (r"\b(loading|skeleton)\b", ["skeleton"]),
]


class ComponentPredictor:
    """Keyword / intent matching against curated component tables."""

    def __init__(self, available: list[str] | None = None) -> None:
        # When set, predictions are restricted to components that exist
        self.available = set(available) if available is not None else None

    def detect_app_type(self, request_text: str) -> str | None:
        text = request_text.lower()
        for app_type, pattern in _APP_TYPE_PATTERNS:
            if re.search(pattern, text):
                return app_type
        return None

    def predict(self, request_text: str, current_app_type: str | None = None) -> Prediction:
        """Predict components for a request.

        The detected app type wins; an existing app keeps its type on
        follow-up requests that do not name one.
        """
        text = request_text.lower()
        app_type = self.detect_app_type(text) or current_app_type

        candidates: list[str] = list(APP_TYPE_COMPONENTS.get(app_type, [])) if app_type else []
        for pattern, components in KEYWORD_TRIGGERS:
            if re.search(pattern, text):
                candidates.extend(components)

        if not candidates:
            candidates = list(DEFAULT_COMPONENTS)

        components: list[str] = []
        for name in candidates:
            if name in components:
                continue
            if self.available is not None and name not in self.available:
                continue
            components.append(name)
            if len(components) >= MAX_COMPONENTS:
                break

        logger.debug(
            "Predicted %d components for app type %s: %s",
            len(components),
            app_type,
            components,
        )
        return Prediction(components=components, app_type=app_type)
