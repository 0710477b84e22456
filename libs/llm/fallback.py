from __future__ import annotations

import math
from typing import Any, Dict, List, Sequence

from libs.core.models import SummaryType

MAX_FALLBACK_CHARS = 2000

POSITION_KEYWORDS = ("职位", "岗位", "Position")
COMPANY_KEYWORDS = ("公司", "Company")
EXPERIENCE_KEYWORDS = ("经验", "工作", "Experience")
SKILL_KEYWORDS = ("技能", "Skills", "能力")
EDUCATION_KEYWORDS = ("教育", "学历", "Education")
REQUIREMENT_KEYWORDS = ("要求", "Requirements", "条件")
RESPONSIBILITY_KEYWORDS = ("职责", "工作内容", "Responsibilities")
LEVEL_KEYWORDS = ("级别", "Level", "年限")


def _lines(text: str) -> List[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


def _matching(lines: Sequence[str], keywords: Sequence[str], limit: int) -> List[str]:
    return [line for line in lines if any(keyword in line for keyword in keywords)][:limit]


def _first_matching(lines: Sequence[str], keywords: Sequence[str], default: str) -> str:
    found = _matching(lines, keywords, 1)
    return found[0] if found else default


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def resume_summary(text: str) -> Dict[str, Any]:
    lines = _lines(text)
    return {
        "name": lines[0] if lines else "Unknown",
        "title": lines[1] if len(lines) > 1 else "Unknown",
        "experience": _matching(lines, EXPERIENCE_KEYWORDS, 3),
        "skills": _matching(lines, SKILL_KEYWORDS, 5),
        "education": _matching(lines, EDUCATION_KEYWORDS, 2),
        "highlights": lines[:3],
        "fallback": True,
    }


def job_summary(text: str) -> Dict[str, Any]:
    lines = _lines(text)
    return {
        "title": _first_matching(lines, POSITION_KEYWORDS, lines[0] if lines else "Unknown"),
        "company": _first_matching(lines, COMPANY_KEYWORDS, "Unknown"),
        "requirements": _matching(lines, REQUIREMENT_KEYWORDS, 5),
        "responsibilities": _matching(lines, RESPONSIBILITY_KEYWORDS, 5),
        "skills": _matching(lines, SKILL_KEYWORDS, 5),
        "level": _first_matching(lines, LEVEL_KEYWORDS, "Unknown"),
        "fallback": True,
    }


def detailed_summary(text: str) -> Dict[str, Any]:
    lines = _lines(text)
    return {
        "summary": " ".join(lines[:2]),
        "key_points": lines[:5],
        "categories": {"content": lines},
        "metadata": {"length": len(text), "lines": len(lines)},
        "fallback": True,
    }


_BUILDERS = {
    SummaryType.resume: resume_summary,
    SummaryType.job: job_summary,
    SummaryType.detailed: detailed_summary,
}


def rule_based_summary(summary_type: SummaryType | str, text: str) -> Dict[str, Any]:
    """Keyword extraction used when the model result is unusable."""
    return _BUILDERS[SummaryType(summary_type)](text[:MAX_FALLBACK_CHARS])
