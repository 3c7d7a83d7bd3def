"""Crisis risk scoring."""

from facet_core.risk.phrases import Phrase, PhraseKind, RiskCategory, UrgencyTag
from facet_core.risk.scorer import (
    InterventionPriority,
    RiskLevel,
    RiskScore,
    RiskScorer,
    fallback_score,
)

__all__ = [
    "InterventionPriority",
    "Phrase",
    "PhraseKind",
    "RiskCategory",
    "RiskLevel",
    "RiskScore",
    "RiskScorer",
    "UrgencyTag",
    "fallback_score",
]
