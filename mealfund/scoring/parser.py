"""
Parse advisor replies of the shape:

    SCORE: <int>
    REASONING: <text>

The result is tagged so the scoring engine can pick its path without
looking at raw text again.
"""

import re
from typing import Union

from pydantic import BaseModel

from mealfund.config import settings

SCORE_RE = re.compile(r"SCORE:\s*(\d+)", re.IGNORECASE)
SCORE_MARKER_RE = re.compile(r"SCORE:", re.IGNORECASE)
REASONING_RE = re.compile(r"REASONING:\s*(.+)", re.IGNORECASE | re.DOTALL)


class Parsed(BaseModel):
    score: int
    reasoning: str


class Unparseable(BaseModel):
    reason: str


ParseResult = Union[Parsed, Unparseable]


def clamp_score(value: int) -> int:
    return max(0, min(100, value))


def parse_advisor_response(text: str) -> ParseResult:
    """
    Empty text, or text carrying neither marker, is Unparseable.
    A SCORE marker without a number falls back to the default score.
    Reasoning is the text after REASONING:, or the whole reply.
    """
    if text is None or not text.strip():
        return Unparseable(reason="empty response")

    reasoning_match = REASONING_RE.search(text)
    if not SCORE_MARKER_RE.search(text) and reasoning_match is None:
        return Unparseable(reason="response has no SCORE or REASONING marker")

    score_match = SCORE_RE.search(text)
    score = int(score_match.group(1)) if score_match else settings.SCORING_DEFAULT_AI_SCORE

    reasoning = reasoning_match.group(1).strip() if reasoning_match else text.strip()
    return Parsed(score=clamp_score(score), reasoning=reasoning)
