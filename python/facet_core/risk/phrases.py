"""Phrase tables for the crisis risk scorer.

Weights are on the 0-10 severity scale.  ``IMMEDIATE`` phrases pin
immediacy to 10 on their own; time references and planning phrases only
raise immediacy when some risk phrase also matched.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple


class RiskCategory(str, Enum):
    SELF_HARM = "self_harm"
    SELF_INJURY = "self_injury"
    VIOLENCE = "violence"
    ALTERED_REALITY = "altered_reality"
    MEANS_ACCESS = "means_access"
    HOPELESSNESS = "hopelessness"
    DISTRESS = "distress"
    ISOLATION = "isolation"


class PhraseKind(str, Enum):
    RISK = "risk"
    PROTECTIVE = "protective"
    TIME = "time"
    PLANNING = "planning"


class UrgencyTag(str, Enum):
    NONE = "none"
    IMMEDIATE = "immediate"


@dataclass(frozen=True)
class Phrase:
    text: str
    kind: PhraseKind
    category: RiskCategory | None = None
    weight: float = 0.0
    urgency: UrgencyTag = UrgencyTag.NONE

    @property
    def specificity(self) -> float:
        """Multi-word phrases are more specific than single keywords."""
        return min(1.0, len(self.text.split()) / 3)


def _risk(category: RiskCategory, weight: float, texts: Tuple[str, ...],
          urgency: UrgencyTag = UrgencyTag.NONE) -> List[Phrase]:
    return [Phrase(t, PhraseKind.RISK, category, weight, urgency) for t in texts]


RISK_PHRASES: List[Phrase] = [
    # Suicidal ideation
    *_risk(RiskCategory.SELF_HARM, 9.5, (
        "kill myself", "end my life", "suicide plan", "suicide method",
        "how to kill myself", "ways to die", "take my own life",
    )),
    *_risk(RiskCategory.SELF_HARM, 9.0, (
        "suicide", "suicidal", "want to die", "better off dead",
        "no point in living", "want to end it all", "end it all",
    )),
    *_risk(RiskCategory.SELF_HARM, 10.0, (
        "tonight is the night", "goodbye forever", "final message",
        "won't be here tomorrow", "suicide note", "wrote a note",
        "final preparations", "this is goodbye",
    ), urgency=UrgencyTag.IMMEDIATE),
    # Self injury
    *_risk(RiskCategory.SELF_INJURY, 8.5, (
        "hurt myself", "harm myself", "cut myself", "cutting myself",
        "self harm", "self-harm", "burning myself", "overdose",
    )),
    # Means access
    *_risk(RiskCategory.MEANS_ACCESS, 9.5, (
        "have pills", "have the pills", "have a gun", "have a rope",
        "bought a gun", "bought rope", "saved up pills",
    ), urgency=UrgencyTag.IMMEDIATE),
    # Harm to others
    *_risk(RiskCategory.VIOLENCE, 8.5, (
        "kill him", "kill her", "kill them", "hurt someone", "hurt somebody",
        "make them pay", "want to hurt them", "shoot them",
    )),
    # Psychotic / dissociative content
    *_risk(RiskCategory.ALTERED_REALITY, 7.0, (
        "voices telling me", "voices tell me", "hearing voices",
        "controlling my thoughts", "nothing is real", "not real anymore",
    )),
    *_risk(RiskCategory.ALTERED_REALITY, 5.5, (
        "they are watching me", "being watched", "someone is following me",
    )),
    # Hopelessness
    *_risk(RiskCategory.HOPELESSNESS, 6.0, (
        "hopeless", "can't go on", "no future", "no hope", "give up on life",
    )),
    *_risk(RiskCategory.HOPELESSNESS, 5.0, (
        "no point", "nothing matters", "give up", "meaningless", "pointless",
    )),
    # Overwhelming distress
    *_risk(RiskCategory.DISTRESS, 5.0, (
        "can't cope", "breaking down", "falling apart", "can't handle",
        "too much pain", "unbearable", "can't stop crying", "overwhelmed",
    )),
    *_risk(RiskCategory.DISTRESS, 2.5, (
        "depressed", "anxious", "struggling", "difficult time", "hard time",
        "stressed", "worried", "scared", "afraid", "upset", "sad", "angry",
        "frustrated", "confused", "lost",
    )),
    # Isolation
    *_risk(RiskCategory.ISOLATION, 4.5, (
        "nobody cares", "no one cares", "no one understands", "all alone",
        "isolated", "abandoned", "disconnected",
    )),
    *_risk(RiskCategory.ISOLATION, 3.0, ("alone", "lonely")),
]

PROTECTIVE_PHRASES: List[Phrase] = [
    Phrase(t, PhraseKind.PROTECTIVE) for t in (
        "my family", "my kids", "my children", "my therapist", "my friends",
        "reasons to live", "getting help", "talked to my doctor",
        "support group", "safety plan", "things will get better",
        "my faith", "i have support", "hope",
    )
]

TIME_PHRASES: List[Phrase] = [
    Phrase(t, PhraseKind.TIME) for t in (
        "right now", "tonight", "today", "immediately", "this minute",
        "can't take it anymore",
    )
]

PLANNING_PHRASES: List[Phrase] = [
    Phrase(t, PhraseKind.PLANNING) for t in (
        "going to", "plan to", "decided", "made up my mind", "time has come",
        "tomorrow", "this weekend",
    )
]


def all_phrases() -> List[Phrase]:
    return [*RISK_PHRASES, *PROTECTIVE_PHRASES, *TIME_PHRASES, *PLANNING_PHRASES]
