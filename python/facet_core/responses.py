"""Pre-authored response texts.

These are used whenever generated content is unavailable or must not be
waited for: crisis replies, deadline fallbacks and plan failures.
"""

CRISIS_RESPONSE = (
    "I'm really concerned about you right now. Your safety is the most important thing. "
    "Please reach out for immediate help by calling 988 (Suicide & Crisis Lifeline) "
    "or text HOME to 741741. I'm here with you through this."
)

FALLBACK_RESPONSE = (
    "I'm experiencing a technical issue, but I'm here to support you. "
    "How are you feeling right now?"
)

FAST_FALLBACK_RESPONSE = "I'm here to support you. How are you feeling right now?"

FAST_CRISIS_FALLBACK_RESPONSE = (
    "I'm concerned about your safety. Please contact 988 Suicide & Crisis Lifeline "
    "immediately for support."
)

CRISIS_RESOURCES = (
    {"name": "988 Suicide & Crisis Lifeline", "contact": "988", "available": "24/7"},
    {"name": "Crisis Text Line", "contact": "Text HOME to 741741", "available": "24/7"},
    {"name": "Emergency Services", "contact": "911", "available": "24/7"},
)

EMOTION_TEMPLATES = {
    "anxiety": (
        "It sounds like you're feeling anxious. That can be really uncomfortable. "
        "Would it help to try a slow breathing exercise together, or would you rather "
        "talk about what's on your mind?"
    ),
    "sadness": (
        "I can hear that you're going through a hard time. Your feelings are valid, "
        "and it's okay to feel sad. Would you like to tell me more about what's been happening?"
    ),
    "anger": (
        "It sounds like something really frustrated you. Those feelings make sense. "
        "What happened that brought this up?"
    ),
    "joy": (
        "It's wonderful to hear that things are going well! "
        "What's been contributing to how good you're feeling?"
    ),
    "fear": (
        "That sounds frightening. You're not alone with this. "
        "What feels most scary right now?"
    ),
    "neutral": "Thank you for sharing that with me. How are you feeling about it?",
}


def emotion_template(emotion: str) -> str:
    return EMOTION_TEMPLATES.get(emotion, EMOTION_TEMPLATES["neutral"])
