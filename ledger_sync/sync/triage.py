"""
Triage classification of device items into personal and work personas.

Order of evaluation:

1. an explicit ``work``/``personal`` tag wins outright
2. a configured remote endpoint is asked (JSON POST, short timeout)
3. a weighted keyword scorer decides

One minimum-confidence threshold applies to both the remote and the keyword
answer; anything below it is reported as ``unknown``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging

import requests

from ..core.exceptions import TriageError

DEFAULT_TIMEOUT = 3.0
DEFAULT_MIN_CONFIDENCE = 0.70
TAG_CONFIDENCE = 0.95


class Persona(Enum):
    PERSONAL = "personal"
    WORK = "work"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "Persona":
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.UNKNOWN


WORK_KEYWORDS: Tuple[Tuple[str, float], ...] = (
    ("jira", 1.4), ("ticket", 1.2), ("deploy", 1.3), ("production", 1.3), ("prod", 1.1),
    ("oncall", 1.3), ("pagerduty", 1.3), ("client", 1.2), ("customer", 1.1), ("meeting", 1.0),
    ("standup", 1.2), ("sprint", 1.2), ("story", 1.0), ("epic", 1.0), ("bug", 1.0),
    ("pr ", 1.2), ("pull request", 1.2), ("merge", 1.0), ("release", 1.0),
    ("okr", 1.1), ("quarter", 1.0), ("roadmap", 1.0), ("production issue", 1.5),
    ("work", 1.0), ("office", 1.0), ("shift", 1.0), ("invoice", 1.1),
)

PERSONAL_KEYWORDS: Tuple[Tuple[str, float], ...] = (
    ("wash", 1.2), ("washing machine", 1.6), ("laundry", 1.3), ("grocer", 1.1), ("shopping", 1.0),
    ("gym", 1.1), ("workout", 1.1), ("dentist", 1.3), ("doctor", 1.2), ("appointment", 1.0),
    ("kids", 1.2), ("school", 1.0), ("family", 1.0), ("home", 1.0), ("garden", 1.0),
    ("rent", 1.0), ("mortgage", 1.0), ("car", 1.0), ("oil change", 1.3), ("pharmacy", 1.1),
    ("vacation", 1.0), ("travel", 1.0), ("birthday", 1.0), ("cook", 1.0), ("meal", 1.0),
)

# Checked in order; first theme with a matching needle wins
THEME_KEYWORDS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("wash", "washing machine", "laundry"), "Home"),
    (("dentist", "doctor", "pharmacy", "health"), "Health"),
    (("gym", "workout", "run", "exercise"), "Fitness"),
    (("rent", "mortgage", "invoice", "bill"), "Finance"),
    (("car", "oil change", "tyre", "tire", "garage"), "Car"),
    (("vacation", "trip", "flight", "travel"), "Travel"),
    (("garden", "yard", "lawn"), "Garden"),
    (("grocer", "shopping"), "Shopping"),
)


@dataclass
class TriageResult:
    """Outcome of classifying one item."""
    persona: Persona
    confidence: float
    source: str  # "tag" | "llm" | "heuristic" | "disabled"
    suggested_theme: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "persona": self.persona.value,
            "confidence": round(self.confidence, 3),
            "source": self.source,
            "suggestedTheme": self.suggested_theme,
        }


def suggest_theme(text: str) -> Optional[str]:
    lowered = text.lower()
    for needles, theme in THEME_KEYWORDS:
        if any(needle in lowered for needle in needles):
            return theme
    return None


class TriageClassifier:
    """Classifies items as personal or work."""

    def __init__(
        self,
        enabled: bool = True,
        endpoint: Optional[str] = None,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.enabled = enabled
        self.endpoint = (endpoint or "").strip() or None
        self.min_confidence = min_confidence
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None,
                    logger: Optional[logging.Logger] = None) -> "TriageClassifier":
        return cls(
            enabled=config.enable_triage,
            endpoint=config.triage_endpoint,
            min_confidence=config.triage_min_confidence,
            timeout=config.triage_timeout,
            session=session,
            logger=logger,
        )

    def classify(self, title: str, notes: Optional[str] = None, tags: Optional[List[str]] = None) -> TriageResult:
        tags = list(tags or [])
        lowered_tags = {t.strip().lstrip("#").lower() for t in tags}
        if "work" in lowered_tags:
            return TriageResult(Persona.WORK, TAG_CONFIDENCE, "tag")
        if "personal" in lowered_tags:
            return TriageResult(Persona.PERSONAL, TAG_CONFIDENCE, "tag")

        if not self.enabled:
            return TriageResult(Persona.UNKNOWN, 0.0, "disabled")

        if self.endpoint:
            try:
                return self._apply_threshold(self._classify_remote(title, notes, tags))
            except TriageError as e:
                self.logger.debug(f"Remote triage unavailable, using keywords: {e}")

        return self._apply_threshold(self.classify_heuristically(title, notes, tags))

    def _apply_threshold(self, result: TriageResult) -> TriageResult:
        if result.persona != Persona.UNKNOWN and result.confidence < self.min_confidence:
            return TriageResult(Persona.UNKNOWN, result.confidence, result.source, result.suggested_theme)
        return result

    def _classify_remote(self, title: str, notes: Optional[str], tags: List[str]) -> TriageResult:
        payload = {"title": title, "notes": notes or "", "tags": tags}
        try:
            response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TriageError(f"request failed: {e}")
        if not 200 <= response.status_code < 300:
            raise TriageError(f"endpoint returned {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise TriageError(f"unparseable response: {e}")
        if not isinstance(data, dict) or "persona" not in data:
            raise TriageError("response carries no persona")

        persona = Persona.parse(data.get("persona"))
        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))
        theme = data.get("theme") or data.get("suggestedTheme")
        return TriageResult(persona, confidence, "llm", str(theme) if theme else None)

    @staticmethod
    def classify_heuristically(title: str, notes: Optional[str] = None, tags: Optional[List[str]] = None) -> TriageResult:
        """Keyword score without the confidence threshold applied."""
        text = "\n".join([title or "", notes or "", " ".join(tags or [])]).lower()

        work_score = sum(weight for needle, weight in WORK_KEYWORDS if needle in text)
        personal_score = sum(weight for needle, weight in PERSONAL_KEYWORDS if needle in text)
        total = work_score + personal_score

        if total <= 0:
            return TriageResult(Persona.UNKNOWN, 0.0, "heuristic")
        if work_score >= personal_score:
            return TriageResult(Persona.WORK, work_score / total, "heuristic")
        return TriageResult(Persona.PERSONAL, personal_score / total, "heuristic", suggest_theme(text))
