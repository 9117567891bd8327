"""
Phase Classifier — maps a free-text subtask name to a delivery Phase.

Matching is substring based and evaluated in a fixed precedence, because a
name can carry several cues ("UI design for the data dashboard" is UI work,
not development).  The keyword table is configuration; the precedence is
not.

Usage:
    from reqtrack.services.phase_classifier import classify

    classify("Backend development")   # -> Phase.DEVELOPMENT
    classify("Kick-off meeting")      # -> Phase.OTHER
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from reqtrack.services.lifecycle_types import Phase

# Precedence order: earlier entries win when several phases match.
PHASE_PRECEDENCE: tuple[Phase, ...] = (
    Phase.PROTOTYPE,
    Phase.UI,
    Phase.DEVELOPMENT,
    Phase.TESTING,
    Phase.ACCEPTANCE,
)

PHASE_KEYWORDS: dict[Phase, tuple[str, ...]] = {
    Phase.PROTOTYPE: ("prototype design",),
    Phase.UI: ("visual design", "ui design"),
    Phase.DEVELOPMENT: ("development", "frontend", "backend", "data"),
    Phase.TESTING: ("testing",),
    Phase.ACCEPTANCE: ("acceptance", "product acceptance"),
}


def classify(
    name: str | None,
    keywords: Mapping[Phase, Sequence[str]] | None = None,
    *,
    case_sensitive: bool = False,
) -> Phase:
    """Return the delivery phase for a subtask name.

    Total: ``None``, empty or unmatched names classify as ``Phase.OTHER``.
    """
    if not name:
        return Phase.OTHER
    table = PHASE_KEYWORDS if keywords is None else keywords
    text = name if case_sensitive else name.lower()

    for phase in PHASE_PRECEDENCE:
        for kw in table.get(phase, ()):
            needle = kw if case_sensitive else kw.lower()
            if needle and needle in text:
                return phase
    return Phase.OTHER
