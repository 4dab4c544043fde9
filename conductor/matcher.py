"""
Capability extraction and similarity scoring for agent reuse.

Pure functions; the registry feeds them stored agents and candidate tasks.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

CAPABILITY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "code_generation": ("code", "implement", "build", "develop", "program", "script"),
    "analysis": ("analyze", "evaluate", "review", "assess", "examine", "inspect"),
    "data_collection": ("collect", "gather", "fetch", "research", "scrape", "retrieve"),
    "synthesis": ("create", "generate", "compose", "design", "produce", "craft"),
    "documentation": ("document", "write", "describe", "explain", "summarize"),
    "testing": ("test", "validate", "verify", "check", "debug"),
    "optimization": ("optimize", "improve", "enhance", "refine", "tune"),
    "planning": ("plan", "architect", "structure", "organize", "outline"),
}

SIGNIFICANT_WORD_MIN_LENGTH = 4


@dataclass(frozen=True)
class MatchWeights:
    capability: float = 0.6
    pattern: float = 0.4
    capability_reason_threshold: float = 0.5
    pattern_reason_threshold: float = 0.3


def extract_capabilities(text: str) -> list[str]:
    """Return every capability tag whose keywords occur in ``text`` (substring, case-insensitive)."""
    lower = text.lower()
    return [
        capability
        for capability, words in CAPABILITY_KEYWORDS.items()
        if any(word in lower for word in words)
    ]


def significant_words(text: str) -> set[str]:
    return {w for w in text.lower().split() if len(w) >= SIGNIFICANT_WORD_MIN_LENGTH}


def pattern_similarity(text_a: str, text_b: str) -> float:
    words_a = significant_words(text_a)
    words_b = significant_words(text_b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b))


def capability_overlap(task_capabilities: Iterable[str], agent_capabilities: Iterable[str]) -> float:
    task_caps = list(dict.fromkeys(task_capabilities))
    if not task_caps:
        return 0.0
    agent_caps = set(agent_capabilities)
    return sum(1 for c in task_caps if c in agent_caps) / len(task_caps)


@dataclass
class MatchBreakdown:
    """Per-candidate signals behind a match score."""

    capability_score: float
    pattern_score: float
    usage_count: int
    weights: MatchWeights = MatchWeights()

    @property
    def weighted_total(self) -> float:
        return (
            self.weights.capability * self.capability_score
            + self.weights.pattern * self.pattern_score
        )

    def reason(self) -> str:
        reasons: list[str] = []
        if self.capability_score > self.weights.capability_reason_threshold:
            reasons.append(f"{round(self.capability_score * 100)}% capability match")
        if self.pattern_score > self.weights.pattern_reason_threshold:
            reasons.append("similar task pattern")
        if self.usage_count > 1:
            reasons.append(f"used {self.usage_count}x before")
        return ", ".join(reasons) or "partial match"

    def to_dict(self) -> dict:
        return {
            "capability": round(self.capability_score, 2),
            "pattern": round(self.pattern_score, 2),
            "weighted_total": round(self.weighted_total, 2),
        }


def score_candidate(
    task_capabilities: Iterable[str],
    task_title: str,
    agent_capabilities: Iterable[str],
    agent_pattern: str,
    usage_count: int,
    weights: MatchWeights | None = None,
) -> MatchBreakdown:
    return MatchBreakdown(
        capability_score=capability_overlap(task_capabilities, agent_capabilities),
        pattern_score=pattern_similarity(agent_pattern, task_title),
        usage_count=usage_count,
        weights=weights or MatchWeights(),
    )
