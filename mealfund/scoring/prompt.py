"""
Urgency prompt rendering (Jinja2 templates under scoring/prompts/).
"""

from pathlib import Path
from typing import Optional, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from mealfund.config import settings
from mealfund.models.enums import BLOCKING_SEVERITIES
from mealfund.schemas.records import IssueRecord
from mealfund.scoring.factors import UrgencyFactors

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"

_env = Environment(
    loader=FileSystemLoader(str(PROMPTS_DIR)),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


def select_critical_issues(issues: Sequence[IssueRecord], limit: Optional[int] = None) -> list[IssueRecord]:
    """Most recent high/critical issues, newest first."""
    if limit is None:
        limit = settings.SCORING_PROMPT_ISSUE_LIMIT
    critical = [i for i in issues if i.severity in BLOCKING_SEVERITIES]
    critical.sort(key=lambda i: i.created_at, reverse=True)
    return critical[:limit]


def render_urgency_prompt(
    school_name: str,
    factors: UrgencyFactors,
    issues: Sequence[IssueRecord],
) -> str:
    template = _env.get_template("urgency_user.jinja2")
    return template.render(
        school_name=school_name,
        factors=factors,
        critical_issues=select_critical_issues(issues),
        recent_days=settings.SCORING_RECENT_DAYS,
    )
