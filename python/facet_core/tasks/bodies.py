"""Task bodies.

A task body turns a ``TaskInput`` into a ``TaskOutput`` or raises.  The
scheduler calls every body through the same ``run`` boundary and treats
the payload as opaque apart from the per-kind key check in
``validate_output``.

Two implementations:
- ``TextGenerationTaskBody`` prompts the external text generator and parses
  its JSON reply
- ``KeywordTaskBody`` is deterministic and offline; used when no text
  generator is configured
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Protocol, Tuple

from facet_core.exceptions import MalformedTaskOutputError, TaskExecutionError
from facet_core.llm.text_generation import ITextGenerator
from facet_core.models import TaskInput, TaskKind, TaskOutput
from facet_core.responses import CRISIS_RESOURCES, CRISIS_RESPONSE, emotion_template

logger = logging.getLogger(__name__)


class TaskBody(Protocol):
    async def run(self, task_input: TaskInput) -> TaskOutput:
        """Run one task.  Raises on failure."""
        ...


def validate_output(kind: TaskKind, output: TaskOutput) -> TaskOutput:
    """Reject outputs that do not match the kind's payload shape."""
    if not isinstance(output, TaskOutput):
        raise MalformedTaskOutputError(f"{kind.value} returned {type(output).__name__}", task_id=kind.value)
    missing = kind.payload_keys - set(output.payload)
    if missing:
        raise MalformedTaskOutputError(
            f"{kind.value} payload missing {sorted(missing)}", task_id=kind.value
        )
    if not 0.0 <= output.confidence <= 1.0:
        raise MalformedTaskOutputError(
            f"{kind.value} confidence {output.confidence} outside [0, 1]", task_id=kind.value
        )
    return output


# ===== Keyword bodies =====

EMOTION_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "anxiety": ("anxious", "worried", "nervous", "panic", "stress", "stressed", "overwhelmed", "tense"),
    "sadness": ("sad", "depressed", "down", "lonely", "empty", "crying", "hopeless", "grief"),
    "anger": ("angry", "mad", "furious", "frustrated", "annoyed", "irritated", "rage"),
    "joy": ("happy", "good", "great", "excited", "grateful", "joy", "wonderful", "proud"),
    "fear": ("scared", "afraid", "terrified", "frightened", "fear"),
}

# valence, arousal, dominance on 0..1
EMOTION_VAD: Dict[str, Tuple[float, float, float]] = {
    "anxiety": (0.25, 0.8, 0.3),
    "sadness": (0.2, 0.3, 0.25),
    "anger": (0.2, 0.85, 0.6),
    "joy": (0.85, 0.6, 0.65),
    "fear": (0.15, 0.85, 0.2),
    "neutral": (0.5, 0.4, 0.5),
}

_WORD = re.compile(r"[a-z']+")

THEME_KEYWORDS = (
    "work", "family", "relationship", "sleep", "school", "health", "friends",
    "partner", "money", "therapy",
)
PROGRESS_KEYWORDS = (
    "progress", "goal", "goals", "better", "improvement", "techniques",
    "exercises", "practice", "working on",
)


class KeywordTaskBody:
    """Offline task bodies built on keyword matching and canned templates."""

    async def run(self, task_input: TaskInput) -> TaskOutput:
        handler = {
            TaskKind.EMOTION_ANALYZER: self._emotion,
            TaskKind.RISK_RESPONDER: self._risk,
            TaskKind.SUPPORT_ADVISOR: self._support,
            TaskKind.MEMORY_MANAGER: self._memory,
            TaskKind.PROGRESS_TRACKER: self._progress,
        }[task_input.kind]
        return handler(task_input)

    @staticmethod
    def _emotion(task_input: TaskInput) -> TaskOutput:
        words = _WORD.findall(task_input.message.lower())
        counts = {
            emotion: sum(1 for w in words if w in keywords)
            for emotion, keywords in EMOTION_KEYWORDS.items()
        }
        primary, hits = max(counts.items(), key=lambda item: item[1])
        if hits == 0:
            primary = "neutral"
        valence, arousal, dominance = EMOTION_VAD[primary]
        secondary = [e for e, n in counts.items() if n and e != primary]
        return TaskOutput(
            payload={
                "primary_emotion": primary,
                "secondary_emotions": secondary,
                "valence": valence,
                "arousal": arousal,
                "dominance": dominance,
                "intensity": min(1.0, 0.3 + 0.2 * hits),
            },
            confidence=0.65 if hits == 0 else min(0.9, 0.7 + 0.05 * hits),
            reasoning=f"{hits} {primary} keyword(s) matched" if hits else "no emotion keywords matched",
            insights=tuple(f"secondary:{e}" for e in secondary),
        )

    @staticmethod
    def _risk(task_input: TaskInput) -> TaskOutput:
        level = str(task_input.risk_summary.get("level", "none"))
        urgent = level in ("high", "critical")
        return TaskOutput(
            payload={
                "risk_level": level,
                "response": CRISIS_RESPONSE if urgent else "",
                "resources": list(CRISIS_RESOURCES) if urgent else [],
                "requires_human": level == "critical",
            },
            confidence=float(task_input.risk_summary.get("confidence", 0.7)),
            reasoning=f"risk level {level}",
            insights=tuple(task_input.risk_summary.get("riskIndicators", ())),
        )

    @staticmethod
    def _support(task_input: TaskInput) -> TaskOutput:
        risk = task_input.prior.get(TaskKind.RISK_RESPONDER)
        if risk and risk.get("response"):
            return TaskOutput(
                payload={"response": risk["response"], "technique": "safety_planning"},
                confidence=0.9,
                reasoning="deferring to safety response",
            )

        emotion = task_input.prior.get(TaskKind.EMOTION_ANALYZER, {}).get("primary_emotion", "neutral")
        response = emotion_template(emotion)
        memory = task_input.prior.get(TaskKind.MEMORY_MANAGER, {})
        themes = memory.get("relevant_context") or []
        if themes:
            response += f" Last time we touched on {themes[0]}; is that still on your mind?"
        return TaskOutput(
            payload={"response": response, "technique": "validation"},
            confidence=0.75,
            reasoning=f"template for {emotion}",
        )

    @staticmethod
    def _memory(task_input: TaskInput) -> TaskOutput:
        text = task_input.message.lower()
        themes = [t for t in THEME_KEYWORDS if re.search(rf"\b{t}\b", text)]
        return TaskOutput(
            payload={"relevant_context": themes, "themes": themes},
            confidence=0.7 if themes else 0.6,
            reasoning=f"{len(themes)} recurring theme(s)",
        )

    @staticmethod
    def _progress(task_input: TaskInput) -> TaskOutput:
        text = task_input.message.lower()
        observed = [k for k in PROGRESS_KEYWORDS if re.search(rf"\b{k}\b", text)]
        return TaskOutput(
            payload={
                "observations": observed,
                "trend": "improving" if observed else "unknown",
            },
            confidence=0.7 if observed else 0.6,
            reasoning=f"{len(observed)} progress marker(s)",
        )


# ===== Text-generation bodies =====

SYSTEM_PROMPT = (
    "You are one analysis component of a supportive mental-health companion. "
    "Reply with a single JSON object and nothing else."
)

TASK_INSTRUCTIONS: Dict[TaskKind, str] = {
    TaskKind.EMOTION_ANALYZER: (
        "Identify the user's primary emotion and its valence, arousal and dominance (0-1)."
    ),
    TaskKind.RISK_RESPONDER: (
        "Assess safety risk. risk_level is one of none, low, moderate, high, critical. "
        "response is a short, direct safety message when risk is high or critical."
    ),
    TaskKind.SUPPORT_ADVISOR: (
        "Write a brief, warm, supportive reply to the user that uses the analysis provided."
    ),
    TaskKind.MEMORY_MANAGER: (
        "List themes from the message that are likely to connect to earlier conversations."
    ),
    TaskKind.PROGRESS_TRACKER: (
        "List observations about the user's progress toward their goals."
    ),
}

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class TextGenerationTaskBody:
    """Task bodies backed by the external text generator."""

    def __init__(self, generator: ITextGenerator, max_tokens: int = 512, temperature: float = 0.7) -> None:
        self.generator = generator
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def run(self, task_input: TaskInput) -> TaskOutput:
        prompt = build_prompt(task_input)
        try:
            raw = await self.generator.generate(
                prompt,
                system=SYSTEM_PROMPT,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except MalformedTaskOutputError:
            raise
        except Exception as e:
            raise TaskExecutionError(f"{task_input.kind.value} generation failed: {e}",
                                     task_id=task_input.kind.value) from e
        return parse_output(task_input.kind, raw)


def build_prompt(task_input: TaskInput) -> str:
    kind = task_input.kind
    key_list = ", ".join(f"\"{k}\": ..." for k in sorted(kind.payload_keys))
    lines: List[str] = [
        TASK_INSTRUCTIONS[kind],
        "",
        f'Return JSON: {{"payload": {{{key_list}}}, '
        '"confidence": 0.0-1.0, "reasoning": "...", "insights": ["..."]}',
        "",
        f"User message: {task_input.message}",
    ]
    if task_input.risk_summary:
        lines.append(f"Risk assessment: {json.dumps(dict(task_input.risk_summary), default=str)}")
    for prior_kind, payload in task_input.prior.items():
        lines.append(f"{prior_kind.value} result: {json.dumps(payload, default=str)}")
    return "\n".join(lines)


def parse_output(kind: TaskKind, raw: str) -> TaskOutput:
    """Parse the generator's JSON reply into a ``TaskOutput``."""
    text = _FENCE.sub("", raw.strip())
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedTaskOutputError(f"{kind.value} returned non-JSON output", task_id=kind.value) from e
    if not isinstance(data, dict) or not isinstance(data.get("payload"), dict):
        raise MalformedTaskOutputError(f"{kind.value} output has no payload object", task_id=kind.value)

    try:
        confidence = float(data.get("confidence", 0.7))
    except (TypeError, ValueError) as e:
        raise MalformedTaskOutputError(f"{kind.value} confidence is not a number", task_id=kind.value) from e

    output = TaskOutput(
        payload=data["payload"],
        confidence=confidence,
        reasoning=str(data.get("reasoning", "")),
        insights=tuple(str(i) for i in data.get("insights") or ()),
    )
    return validate_output(kind, output)
