"""Classify a cleaned buffer into an email copy, clarification or other response.

Explicit envelope tags always win. Without tags a layered heuristic runs in a
fixed order: flow-outline detection, then email-structure detection, then
clarification signals. The flow-outline threshold and the "list every field
when none matched" fallback are tuning knobs exposed on
``ContentClassifier``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from schemas.streaming import ResponseEnvelope, ResponseKind
from services.streaming.markers import ENVELOPE_TAGS


logger = logging.getLogger(__name__)

CLARIFICATION_OPENER = "Need a quick clarification before I write the email:"
CLARIFICATION_BULLET = "•"

FLOW_OUTLINE_THRESHOLD = 3


@dataclass(frozen=True)
class ClarificationField:
    label: str
    patterns: tuple[re.Pattern[str], ...]

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)


def _field(label: str, *patterns: str) -> ClarificationField:
    return ClarificationField(
        label=label,
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
    )


CLARIFICATION_FIELDS: tuple[ClarificationField, ...] = (
    _field("Campaign type or goal", r"campaign type", r"goal", r"purpose", r"email (?:about|type)"),
    _field("Product or category to feature", r"product", r"collection", r"category", r"feature"),
    _field("Offer or promotion", r"offer", r"promotion", r"discount", r"free shipping", r"deal"),
    _field("Audience segment", r"audience", r"segment", r"customers", r"subscribers", r"buyers"),
    _field("Timing or urgency", r"timing", r"urgency", r"deadline", r"season", r"campaign (?:end|expires)"),
)

# Structural markers of a multi-email planning document.
FLOW_OUTLINE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"##\s+.+?\s+OUTLINE",
        r"\*\*Flow Goal:\*\*",
        r"\*\*Target Audience:\*\*",
        r"\*\*Total Emails:\*\*",
        r"###\s+Email\s+\d+:",
        r"\*\*Email Type:\*\*",
        r"\*\*Timing:\*\*",
        r"\*\*Purpose:\*\*",
        r"\*\*Key Points:\*\*",
    )
)

EMAIL_STRUCTURE_RE = re.compile(
    r"(HERO SECTION|Section Title:|Call to Action|Call-to-Action|FINAL CTA|"
    r"Headline:|Sub-headline:|Call to Action Button:)",
    re.IGNORECASE,
)

CLARIFICATION_SIGNAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"need more information",
        r"missing required",
        r"please provide",
        r"can you clarify",
        r"what is this email",
        r"campaign type",
        r"primary goal",
        r"offer or promotion",
        r"timing or urgency",
        r"target segment",
    )
)


def _trim_partial_close(inner: str, close_tag: str) -> str:
    # "...body</email_c" mid-stream: drop the half-received closing tag.
    lowered = inner.lower()
    for size in range(len(close_tag) - 1, 0, -1):
        if lowered.endswith(close_tag[:size]):
            return inner[:-size]
    return inner


class ContentClassifier:
    """Decide which ``ResponseKind`` a cleaned buffer represents."""

    def __init__(
        self,
        *,
        flow_outline_threshold: int = FLOW_OUTLINE_THRESHOLD,
        flow_outline_patterns: Sequence[re.Pattern[str]] = FLOW_OUTLINE_PATTERNS,
        email_structure: re.Pattern[str] = EMAIL_STRUCTURE_RE,
        clarification_signals: Sequence[re.Pattern[str]] = CLARIFICATION_SIGNAL_PATTERNS,
        clarification_fields: Sequence[ClarificationField] = CLARIFICATION_FIELDS,
        list_all_fields_when_unmatched: bool = True,
    ) -> None:
        if flow_outline_threshold < 1:
            raise ValueError("flow_outline_threshold must be >= 1")
        self.flow_outline_threshold = flow_outline_threshold
        self.flow_outline_patterns = tuple(flow_outline_patterns)
        self.email_structure = email_structure
        self.clarification_signals = tuple(clarification_signals)
        self.clarification_fields = tuple(clarification_fields)
        self.list_all_fields_when_unmatched = list_all_fields_when_unmatched
        self._tag_patterns = [
            (
                kind,
                re.compile(rf"<{tag}>(.*?)</{tag}>", re.IGNORECASE | re.DOTALL),
                re.compile(rf"<{tag}>", re.IGNORECASE),
                f"</{tag}>",
            )
            for tag, kind in ENVELOPE_TAGS
        ]

    def classify(self, clean_text: str) -> ResponseEnvelope:
        tagged = self.find_tagged(clean_text)
        if tagged is not None:
            kind, inner = tagged
            return self._envelope(kind, inner)

        text = clean_text.strip()
        if not text:
            return ResponseEnvelope(kind=ResponseKind.OTHER)
        if self.is_flow_outline(text):
            logger.debug("Classified as flow outline (%d chars)", len(text))
            return self._envelope(ResponseKind.OTHER, text)
        if self.has_email_structure(text):
            logger.debug("Classified by email structure (%d chars)", len(text))
            return self._envelope(ResponseKind.EMAIL_COPY, text)
        if self.has_clarification_signals(text):
            logger.debug("Classified by clarification signals (%d chars)", len(text))
            return self._envelope(ResponseKind.CLARIFICATION, text)
        return self._envelope(ResponseKind.OTHER, text)

    def find_tagged(self, text: str) -> tuple[ResponseKind, str] | None:
        """Return the highest-priority envelope tag with non-empty content.

        An opening tag without its closing tag (a buffer saved mid-stream)
        counts, with its content running to the end of the buffer.
        """
        found: list[tuple[ResponseKind, str]] = []
        for kind, closed, opened, close_tag in self._tag_patterns:
            if match := closed.search(text):
                inner = match.group(1).strip()
            elif match := opened.search(text):
                inner = _trim_partial_close(text[match.end():], close_tag).strip()
            else:
                continue
            if inner:
                found.append((kind, inner))
        if not found:
            return None
        if len(found) > 1:
            logger.warning(
                "Multiple envelope tags present; using %s (candidates: %s)",
                found[0][0].value,
                ", ".join(kind.value for kind, _ in found),
            )
        return found[0]

    def is_flow_outline(self, text: str) -> bool:
        hits = sum(1 for pattern in self.flow_outline_patterns if pattern.search(text))
        return hits >= self.flow_outline_threshold

    def has_email_structure(self, text: str) -> bool:
        return self.email_structure.search(text) is not None

    def has_clarification_signals(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.clarification_signals)

    def format_clarification(self, text: str) -> str:
        """Rewrite a clarification request into the fixed opener plus bullet list."""
        labels = [field.label for field in self.clarification_fields if field.matches(text)]
        if not labels and self.list_all_fields_when_unmatched:
            labels = [field.label for field in self.clarification_fields]
        bullets = "\n".join(f"{CLARIFICATION_BULLET} {label}" for label in labels)
        return f"{CLARIFICATION_OPENER}\n\n{bullets}" if bullets else CLARIFICATION_OPENER

    def _envelope(self, kind: ResponseKind, raw_text: str) -> ResponseEnvelope:
        if kind is ResponseKind.CLARIFICATION:
            return ResponseEnvelope(
                kind=kind, text=self.format_clarification(raw_text), raw_text=raw_text
            )
        return ResponseEnvelope(kind=kind, text=raw_text, raw_text=raw_text)


_default_classifier = ContentClassifier()


def classify(clean_text: str) -> ResponseEnvelope:
    """Classify with the default thresholds."""
    return _default_classifier.classify(clean_text)
