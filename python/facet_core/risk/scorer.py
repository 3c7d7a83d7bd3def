"""Crisis risk scorer.

Pure, synchronous scoring of a message against a precompiled phrase index.
Sits on the critical path of every request, so the index is compiled once
at construction and each call is a single regex scan.

Provides:
- ``RiskScore`` (immutable) with per-category scores, aggregate, immediacy,
  confidence, matched indicators and intervention priority
- ``RiskScorer.score()`` which never raises
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from facet_core.risk.phrases import (
    Phrase,
    PhraseKind,
    RiskCategory,
    UrgencyTag,
    all_phrases,
)

logger = logging.getLogger(__name__)

MAX_PROTECTIVE_REDUCTION = 2.0
MAX_CULTURAL_ADJUSTMENT = 0.5
CRITICAL_THRESHOLD = 8.0
SHORT_INPUT_CHARS = 20
HISTORY_ESCALATION_FACTOR = 1.15

# Bounded aggregate adjustments by cultural context
CULTURAL_ADJUSTMENTS: Dict[str, float] = {
    "understated": 0.5,  # distress tends to be under-reported
    "collectivist": 0.3,
    "stoic": 0.5,
    "expressive": -0.3,  # strong language is more habitual
}


class RiskLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_aggregate(cls, aggregate: float) -> "RiskLevel":
        if aggregate >= CRITICAL_THRESHOLD:
            return cls.CRITICAL
        if aggregate >= 6.0:
            return cls.HIGH
        if aggregate >= 4.0:
            return cls.MODERATE
        if aggregate >= 1.0:
            return cls.LOW
        return cls.NONE


class InterventionPriority(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RiskScore:
    """Risk assessment of one message.  Computed once, never mutated."""

    category_scores: Dict[str, float]
    aggregate: float
    level: RiskLevel
    immediacy: float
    confidence: float
    risk_indicators: Tuple[str, ...] = ()
    protective_indicators: Tuple[str, ...] = ()
    intervention_priority: InterventionPriority = InterventionPriority.LOW
    flags: Tuple[str, ...] = field(default_factory=tuple)
    cultural_adjustment: float = 0.0

    @property
    def is_critical(self) -> bool:
        return self.level == RiskLevel.CRITICAL

    def summary(self) -> Dict[str, Any]:
        """Compact form attached to response metadata."""
        return {
            "level": self.level.value,
            "aggregate": self.aggregate,
            "immediacy": self.immediacy,
            "confidence": self.confidence,
            "interventionPriority": self.intervention_priority.value,
            "riskIndicators": list(self.risk_indicators),
            "protectiveIndicators": list(self.protective_indicators),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data["categoryScores"] = dict(self.category_scores)
        data["flags"] = list(self.flags)
        data["culturalAdjustment"] = self.cultural_adjustment
        return data


def fallback_score() -> RiskScore:
    """Conservative score used when scoring itself fails."""
    return RiskScore(
        category_scores={c.value: 0.0 for c in RiskCategory},
        aggregate=5.0,
        level=RiskLevel.MODERATE,
        immediacy=5.0,
        confidence=0.5,
        intervention_priority=InterventionPriority.MODERATE,
        flags=("fallback_mode",),
    )


class PhraseIndex:
    """Single alternation regex over every phrase, longest first."""

    def __init__(self, phrases: Iterable[Phrase]) -> None:
        self._lookup: Dict[str, Phrase] = {}
        for phrase in phrases:
            self._lookup[phrase.text] = phrase
            # Accept "cant" for "can't" and so on
            if "'" in phrase.text:
                self._lookup.setdefault(phrase.text.replace("'", ""), phrase)
        alternation = "|".join(
            re.escape(text) for text in sorted(self._lookup, key=len, reverse=True)
        )
        self._pattern = re.compile(rf"(?<![\w-])(?:{alternation})(?![\w-])")

    def scan(self, normalized: str) -> List[Phrase]:
        return [self._lookup[m.group(0)] for m in self._pattern.finditer(normalized)]

    def __len__(self) -> int:
        return len(self._lookup)


def normalize(text: str) -> str:
    text = text.lower().replace("’", "'").replace("‘", "'")
    return " ".join(text.split())


class RiskScorer:
    """Keyword/phrase crisis risk scorer.

    Heuristic only: the mechanism (bounded adjustments, never flipping the
    critical classification through cultural context) is what matters here,
    not clinical accuracy.
    """

    def __init__(self, phrases: Optional[Iterable[Phrase]] = None) -> None:
        self._index = PhraseIndex(phrases if phrases is not None else all_phrases())

    def score(
        self,
        text: str,
        cultural_context: Optional[str] = None,
        history: Sequence[float] = (),
    ) -> RiskScore:
        """Score *text*.  Never raises; internal faults yield ``fallback_score()``."""
        try:
            return self._score(text, cultural_context, history)
        except Exception:
            logger.exception("Risk scoring failed; returning conservative default")
            return fallback_score()

    # ── Internal ─────────────────────────────────────────────────────

    def _score(
        self,
        text: str,
        cultural_context: Optional[str],
        history: Sequence[float],
    ) -> RiskScore:
        normalized = normalize(text)
        matches = self._index.scan(normalized)

        risk = [p for p in matches if p.kind == PhraseKind.RISK]
        protective = _unique(p.text for p in matches if p.kind == PhraseKind.PROTECTIVE)
        time_refs = [p for p in matches if p.kind == PhraseKind.TIME]
        planning = [p for p in matches if p.kind == PhraseKind.PLANNING]

        category_scores = self._category_scores(risk)
        active = [s for s in category_scores.values() if s > 0]
        primary = max(active, default=0.0)

        aggregate = 0.0
        flags: List[str] = []
        if primary > 0:
            breadth = min(1.0, 0.25 * (len(active) - 1))
            reduction = min(MAX_PROTECTIVE_REDUCTION, 0.5 * len(protective))
            aggregate = _clamp(primary + breadth - reduction)
            # Protective factors never pull a critical phrase below the line
            if max(p.weight for p in risk) >= CRITICAL_THRESHOLD:
                aggregate = max(aggregate, CRITICAL_THRESHOLD)

            if _escalating(history):
                aggregate = _clamp(aggregate * HISTORY_ESCALATION_FACTOR)
                flags.append("history_escalation")

        aggregate, adjustment = self._apply_cultural(aggregate, cultural_context)
        aggregate = round(aggregate, 2)
        level = RiskLevel.from_aggregate(aggregate)

        immediacy = self._immediacy(risk, time_refs, planning)
        confidence = self._confidence(risk, normalized)
        risk_indicators = _unique(p.text for p in risk)

        if confidence < 0.5:
            flags.append("low_confidence")
        if len(risk_indicators) >= 3:
            flags.append("multiple_indicators")
        if immediacy >= 8 and level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            flags.append("immediate_intervention_needed")
        if len(protective) >= 3:
            flags.append("strong_protective_factors")

        return RiskScore(
            category_scores=category_scores,
            aggregate=aggregate,
            level=level,
            immediacy=immediacy,
            confidence=confidence,
            risk_indicators=risk_indicators,
            protective_indicators=protective,
            intervention_priority=_priority(aggregate, immediacy, confidence, level),
            flags=tuple(flags),
            cultural_adjustment=adjustment,
        )

    @staticmethod
    def _category_scores(risk: List[Phrase]) -> Dict[str, float]:
        by_category: Dict[RiskCategory, List[float]] = {}
        for phrase in risk:
            by_category.setdefault(phrase.category, []).append(phrase.weight)

        scores: Dict[str, float] = {c.value: 0.0 for c in RiskCategory}
        for category, weights in by_category.items():
            frequency_bonus = min(1.0, 0.5 * (len(weights) - 1))
            scores[category.value] = round(_clamp(max(weights) + frequency_bonus), 2)
        return scores

    @staticmethod
    def _apply_cultural(aggregate: float, cultural_context: Optional[str]) -> Tuple[float, float]:
        if not cultural_context or aggregate <= 0:
            return aggregate, 0.0
        delta = CULTURAL_ADJUSTMENTS.get(cultural_context.lower(), 0.0)
        delta = max(-MAX_CULTURAL_ADJUSTMENT, min(MAX_CULTURAL_ADJUSTMENT, delta))
        adjusted = _clamp(aggregate + delta)

        # Never cross the critical line in either direction
        if aggregate < CRITICAL_THRESHOLD <= adjusted:
            adjusted = CRITICAL_THRESHOLD - 0.01
        elif adjusted < CRITICAL_THRESHOLD <= aggregate:
            adjusted = CRITICAL_THRESHOLD
        return adjusted, round(adjusted - aggregate, 2)

    @staticmethod
    def _immediacy(risk: List[Phrase], time_refs: List[Phrase], planning: List[Phrase]) -> float:
        if any(p.urgency == UrgencyTag.IMMEDIATE for p in risk):
            return 10.0
        severity = max((p.weight for p in risk), default=0.0)
        if severity <= 0:
            return 0.0

        immediacy = severity * 0.6
        if time_refs:
            immediacy += 4.0
        acute = {RiskCategory.SELF_HARM, RiskCategory.SELF_INJURY,
                 RiskCategory.VIOLENCE, RiskCategory.MEANS_ACCESS}
        if planning and any(p.category in acute for p in risk):
            immediacy += min(1.5, 0.5 * len(planning))
        return round(min(10.0, immediacy), 2)

    @staticmethod
    def _confidence(risk: List[Phrase], normalized: str) -> float:
        short_penalty = 0.15 if len(normalized) < SHORT_INPUT_CHARS else 0.0
        if not risk:
            return round(0.7 - short_penalty, 3)

        distinct = {p.text: p for p in risk}
        specificity = sum(p.specificity for p in distinct.values()) / len(distinct)
        confidence = 0.45 + 0.25 * specificity + 0.08 * min(4, len(distinct)) - short_penalty
        return round(max(0.1, min(0.99, confidence)), 3)


# ── Helpers ──────────────────────────────────────────────────────────


def _clamp(value: float, low: float = 0.0, high: float = 10.0) -> float:
    return max(low, min(high, value))


def _unique(items: Iterable[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(items))


def _escalating(history: Sequence[float]) -> bool:
    """True when the last three aggregates rose by more than one point."""
    if len(history) < 3:
        return False
    recent = list(history)[-3:]
    return recent[-1] - recent[0] > 1.0


def _priority(
    aggregate: float, immediacy: float, confidence: float, level: RiskLevel
) -> InterventionPriority:
    weighted = aggregate * confidence
    if weighted >= 8 and immediacy >= 8:
        return InterventionPriority.CRITICAL
    if weighted >= 6 or immediacy >= 7 or level == RiskLevel.CRITICAL:
        return InterventionPriority.HIGH
    if weighted >= 4 or immediacy >= 5:
        return InterventionPriority.MODERATE
    return InterventionPriority.LOW
