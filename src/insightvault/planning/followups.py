"""Conversational continuity - detect follow-up questions about a prior answer.

A follow-up is answered from conversation history alone, never by deriving new
structure from the dataset. Detection is pattern based and deterministic.
"""

import re
from typing import Any, Optional, Sequence

from insightvault.planning.detectors import looks_structural, normalize_question
from insightvault.planning.intent import FollowUp

# Questions this short without a structural keyword lean on prior context
SHORT_VAGUE_MAX_WORDS = 3
REFERENCE_MAX_WORDS = 8


def _role(message: Any) -> Optional[str]:
    if isinstance(message, dict):
        return message.get("role")
    return getattr(message, "role", None)


def has_prior_answer(history: Sequence[Any]) -> bool:
    """True when at least one assistant turn exists."""
    return any(_role(m) == "assistant" for m in history or ())


def classify_followup(question: str, history: Sequence[Any]) -> dict:
    """
    Classify whether a question follows up on a previous answer.

    Args:
        question: The new question from the user
        history: Prior turns (ChatMessage models or role/content dicts)

    Returns:
        Classification dict with:
        {
            "is_followup": bool,
            "type": "explanation|contrast|elaboration|reference|short_vague|new_question",
            "confidence": float (0-1),
            "signals": [ ... ]  # matched pattern names
        }
    """
    if not has_prior_answer(history):
        return {"is_followup": False, "type": "new_question", "confidence": 1.0, "signals": []}

    text = normalize_question(question)
    signals = []
    followup_type = None
    confidence = 0.0

    # 1. Explanation: "why ...", "explain", "how come"
    if _detect_explanation(text):
        signals.append("explanation")
        followup_type = "explanation"
        confidence = 0.95

    # 2. Contrast: "and the worst?", "what about X", "how about X"
    if _detect_contrast(text):
        signals.append("contrast")
        if not followup_type:
            followup_type = "contrast"
        confidence = max(confidence, 0.9)

    # 3. Elaboration: "tell me more", "go on", "elaborate"
    if _detect_elaboration(text):
        signals.append("elaboration")
        if not followup_type:
            followup_type = "elaboration"
        confidence = max(confidence, 0.9)

    words = text.split()

    # 4. Reference words in a short question: "is that good", "for the same genre".
    # Pronouns only count when no detector could act on the question, since
    # "movies that have a rating over 8" uses "that" as a relative pronoun.
    if len(words) <= REFERENCE_MAX_WORDS and (
        _detect_same_reference(text) or (not looks_structural(text) and _detect_reference_words(text))
    ):
        signals.append("reference")
        if not followup_type:
            followup_type = "reference"
        confidence = max(confidence, 0.8)

    # 5. Very short question that no detector could act on
    if len(words) <= SHORT_VAGUE_MAX_WORDS and not looks_structural(text):
        signals.append("short_vague")
        if not followup_type:
            followup_type = "short_vague"
        confidence = max(confidence, 0.7)

    if not signals:
        return {"is_followup": False, "type": "new_question", "confidence": 0.8, "signals": []}

    return {
        "is_followup": True,
        "type": followup_type,
        "confidence": confidence,
        "signals": signals,
    }


def detect_followup(question: str, history: Sequence[Any]) -> Optional[FollowUp]:
    """Return a FollowUp intent when the question leans on a prior answer."""
    classification = classify_followup(question, history)
    if not classification["is_followup"]:
        return None
    return FollowUp(followup_type=classification["type"])


def _detect_explanation(text: str) -> bool:
    patterns = [
        r"^why\b",
        r"^how\s+come\b",
        r"\bexplain\b",
        r"\bwhat\s+does\s+(?:that|this|it)\s+mean\b",
        r"\bwhat\s+do\s+you\s+mean\b",
    ]
    return any(re.search(p, text) for p in patterns)


def _detect_contrast(text: str) -> bool:
    patterns = [
        r"^and\s+(?:the|what|how|for|in|with)\b",
        r"^(?:what|how)\s+about\b",
        r"^(?:and|but)\s+\w+$",
        r"^what\s+else\b",
    ]
    return any(re.search(p, text) for p in patterns)


def _detect_elaboration(text: str) -> bool:
    patterns = [
        r"^tell\s+me\s+more(?:\s+about\s+(?:that|this|it|those|these|them))?$",
        r"^(?:more\s+details?|go\s+on|continue|elaborate|expand)\b",
        r"\b(?:elaborate|expand)\s+on\s+(?:that|this|it)\b",
        r"^(?:can|could)\s+you\s+(?:elaborate|expand|clarify)\b",
    ]
    return any(re.search(p, text) for p in patterns)


def _detect_same_reference(text: str) -> bool:
    """Explicit back-reference: for/of/in the same."""
    return bool(re.search(r"\b(?:for|of|in)\s+the\s+same\b", text))


def _detect_reference_words(text: str) -> bool:
    """Standalone that/those/these/it/them."""
    return bool(re.search(r"\b(?:that|those|these|it|them)\b", text))
