"""Shared value objects for the orchestration engine.

Provides:
- Inbound ``Request`` with its closed vocabularies (urgency, speed, transparency)
- ``TaskKind``: the closed set of analysis tasks and their payload shapes
- ``TaskInput`` / ``TaskOutput``: the uniform task-body boundary
- ``TaskResult``: one finished task, appended to an ordered result list
- ``ExecutionStep``: entries of the append-only orchestration event log
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from facet_core.exceptions import InvalidRequestError

MAX_MESSAGE_LENGTH = 10_000


# ── Enums ────────────────────────────────────────────────────────────


class UrgencyHint(str, Enum):
    NORMAL = "normal"
    ELEVATED = "elevated"
    CRISIS = "crisis"


class SpeedPreference(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    THOROUGH = "thorough"


class Transparency(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    DETAILED = "detailed"


class Scenario(str, Enum):
    """SLA scenario classes."""

    SIMPLE = "simple"
    SUPPORTIVE = "supportive"
    CRISIS = "crisis"
    DEEP = "deep"


class TaskKind(str, Enum):
    """Every analysis task the scheduler knows how to run."""

    RISK_RESPONDER = "risk_responder"  # safety assessment + crisis resources
    SUPPORT_ADVISOR = "support_advisor"  # therapeutic suggestion text
    EMOTION_ANALYZER = "emotion_analyzer"  # primary emotion + VAD
    MEMORY_MANAGER = "memory_manager"  # relevant context from past sessions
    PROGRESS_TRACKER = "progress_tracker"  # goal / progress observations

    @property
    def payload_keys(self) -> FrozenSet[str]:
        """Keys every successful payload of this kind must carry."""
        return PAYLOAD_KEYS[self]


PAYLOAD_KEYS: Dict[TaskKind, FrozenSet[str]] = {
    TaskKind.RISK_RESPONDER: frozenset({"risk_level", "response"}),
    TaskKind.SUPPORT_ADVISOR: frozenset({"response"}),
    TaskKind.EMOTION_ANALYZER: frozenset({"primary_emotion", "valence", "arousal", "dominance"}),
    TaskKind.MEMORY_MANAGER: frozenset({"relevant_context"}),
    TaskKind.PROGRESS_TRACKER: frozenset({"observations"}),
}


class StepType(str, Enum):
    """Kinds of orchestration log entries."""

    PLANNED = "planned"
    CACHE_HIT = "cache_hit"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    DEGRADED = "degraded"
    FALLBACK = "fallback"
    CRISIS_RESPONSE = "crisis_response"
    SYNTHESIZED = "synthesized"


# ── Request ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Preferences:
    speed: SpeedPreference = SpeedPreference.BALANCED
    transparency: Transparency = Transparency.MINIMAL


@dataclass(frozen=True)
class Request:
    """An accepted inbound message.  Immutable."""

    message: str
    user_id: str
    conversation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    urgency_hint: UrgencyHint = UrgencyHint.NORMAL
    preferences: Preferences = field(default_factory=Preferences)
    cultural_context: Optional[str] = None
    # Recent aggregate risk scores for this user, oldest first
    risk_history: Tuple[float, ...] = ()
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        default_transparency: Transparency = Transparency.MINIMAL,
    ) -> "Request":
        """Build a request from the inbound JSON shape.

        Raises:
            InvalidRequestError: on missing fields or unknown enum values.
        """
        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            raise InvalidRequestError("message must be a non-empty string")
        if len(message) > MAX_MESSAGE_LENGTH:
            raise InvalidRequestError(f"message exceeds {MAX_MESSAGE_LENGTH} characters")

        user_id = data.get("userId") or data.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidRequestError("userId must be a non-empty string")

        prefs = data.get("preferences") or {}
        if not isinstance(prefs, Mapping):
            raise InvalidRequestError("preferences must be an object")
        try:
            urgency = UrgencyHint(data.get("urgencyHint") or data.get("urgency_hint") or "normal")
            preferences = Preferences(
                speed=SpeedPreference(prefs.get("speed", SpeedPreference.BALANCED.value)),
                transparency=Transparency(prefs.get("transparency", default_transparency.value)),
            )
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e

        history = data.get("riskHistory") or data.get("risk_history") or ()
        if not isinstance(history, (list, tuple)) or not all(
            isinstance(h, (int, float)) and not isinstance(h, bool) for h in history
        ):
            raise InvalidRequestError("riskHistory must be a list of numbers")

        cultural_context = data.get("culturalContext") or data.get("cultural_context")
        if cultural_context is not None and not isinstance(cultural_context, str):
            raise InvalidRequestError("culturalContext must be a string")

        kwargs: Dict[str, Any] = {
            "message": message,
            "user_id": user_id,
            "urgency_hint": urgency,
            "preferences": preferences,
            "cultural_context": cultural_context,
            "risk_history": tuple(float(h) for h in history),
        }
        conversation_id = data.get("conversationId") or data.get("conversation_id")
        if conversation_id:
            kwargs["conversation_id"] = str(conversation_id)
        return cls(**kwargs)

    @property
    def normalized_message(self) -> str:
        """Lower-cased, whitespace-collapsed text used for cache keys."""
        return " ".join(self.message.lower().split())


# ── Task boundary ────────────────────────────────────────────────────


@dataclass(frozen=True)
class TaskInput:
    """Everything a task body may read."""

    kind: TaskKind
    message: str
    user_id: str
    # Payloads of completed prerequisite tasks
    prior: Mapping[TaskKind, Dict[str, Any]] = field(default_factory=dict)
    risk_summary: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskOutput:
    """What a task body hands back to the scheduler."""

    payload: Dict[str, Any]
    confidence: float
    reasoning: str = ""
    insights: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TaskResult:
    """One finished task.  Offsets are milliseconds from request start."""

    task_id: TaskKind
    start_offset_ms: float
    end_offset_ms: float
    payload: Dict[str, Any]
    confidence: float
    success: bool
    influence_weight: float = 0.5
    cached: bool = False
    error: Optional[str] = None
    reasoning: str = ""
    insights: Tuple[str, ...] = ()

    @property
    def duration_ms(self) -> float:
        return max(0.0, self.end_offset_ms - self.start_offset_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id.value,
            "startOffsetMs": round(self.start_offset_ms, 2),
            "endOffsetMs": round(self.end_offset_ms, 2),
            "durationMs": round(self.duration_ms, 2),
            "payload": self.payload,
            "confidence": self.confidence,
            "success": self.success,
            "influenceWeight": self.influence_weight,
            "cached": self.cached,
            "error": self.error,
            "insights": list(self.insights),
        }


@dataclass(frozen=True)
class ExecutionStep:
    """One entry of the append-only orchestration log."""

    step_type: StepType
    offset_ms: float
    task_id: Optional[TaskKind] = None
    detail: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.step_type.value,
            "offsetMs": round(self.offset_ms, 2),
            "taskId": self.task_id.value if self.task_id else None,
            "detail": dict(self.detail),
        }
