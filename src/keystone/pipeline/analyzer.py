"""Requirement analyzers: free text → scored work breakdown.

An analyzer only proposes. It never touches the store; the pipeline decides
what happens to its output.

The default ``KeywordAnalyzer`` is a deterministic regex classifier in the
same spirit as a tier router: no network, no model, runs in well under a
millisecond. It is a scoring stub, not language understanding. Swap in a
different ``Analyzer`` for anything smarter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from keystone.core.models import (
    EpicDraft,
    Priority,
    StoryDraft,
    TaskDraft,
    TaskType,
    clamp_confidence,
)

logger = structlog.get_logger()


@dataclass
class Breakdown:
    """What an analyzer proposes for one requirement."""

    parsed_intent: str
    extracted_entities: dict[str, Any] = field(default_factory=dict)
    suggested_epics: list[EpicDraft] = field(default_factory=list)
    confidence: float = 0.0


class Analyzer(Protocol):
    def analyze(self, text: str) -> Breakdown: ...


# ═══════════════════════════════════════════════════════════════════════════════
# KEYWORD TABLES
# ═══════════════════════════════════════════════════════════════════════════════

_GENERAL_THEME = "Core Functionality"

# Checked in order; a feature lands in the first theme that matches.
_THEMES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Authentication & Access", re.compile(
        r"\b(log\s?in|log\s?out|sign[\s-]?(?:in|up|out)|auth\w*|password|oauth|sso|"
        r"permissions?|roles?|2fa|mfa)\b"
    )),
    ("Payments & Billing", re.compile(
        r"\b(payments?|billing|invoices?|checkout|subscriptions?|stripe|refunds?|pricing)\b"
    )),
    ("Notifications", re.compile(
        r"\b(notif\w*|emails?|sms|alerts?|reminders?|push messages?)\b"
    )),
    ("Reporting & Analytics", re.compile(
        r"\b(reports?|reporting|dashboards?|analytics?|metrics?|charts?|exports?|insights?)\b"
    )),
    ("Search & Discovery", re.compile(
        r"\b(search\w*|filter\w*|sort\w*|browse|recommend\w*)\b"
    )),
    ("Integrations", re.compile(
        r"\b(integrat\w*|apis?|webhooks?|github|jira|slack|jenkins|sync\w*)\b"
    )),
    ("User Profile", re.compile(
        r"\b(profiles?|accounts?|settings|preferences?|avatars?)\b"
    )),
    ("Data Management", re.compile(
        r"\b(uploads?|imports?|storage|database|records?|files?|backups?)\b"
    )),
)

_CRITICAL_RE = re.compile(r"\b(critical|urgent|asap|security|compliance|outage|gdpr)\b")
_HIGH_RE = re.compile(r"\b(important|must|high priority|required|blocker)\b")
_LOW_RE = re.compile(r"\b(nice to have|optional|later|eventually|low priority|if time)\b")

_FIX_RE = re.compile(r"\b(fix\w*|bugs?|broken|errors?|crash\w*|regressions?)\b")
_IMPROVE_RE = re.compile(r"\b(improve\w*|optimi[sz]\w*|refactor\w*|speed up|faster|performance)\b")

_UI_RE = re.compile(r"\b(pages?|screens?|ui|ux|forms?|views?|buttons?|layout|dashboards?|mobile)\b")
_DOCS_RE = re.compile(r"\b(document\w*|docs|guides?|help|onboarding)\b")
_DEPLOY_RE = re.compile(r"\b(deploy\w*|release|rollout|ci/cd|pipeline|infrastructure)\b")

_CLAUSE_SPLIT_RE = re.compile(r"(?:\r?\n|[.;!?](?=\s|$)|,?\s+and also\s+)+")
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")
_LEAD_IN_RE = re.compile(
    r"^(?:we (?:need|want)(?: to)?|i (?:need|want)(?: to)?|"
    r"the (?:system|app|application|platform|product) (?:should|must|shall|will)"
    r"(?: be able to| allow users to| support)?|"
    r"users? (?:should|must|can|will)(?: be able to)?|please|also)\s+",
    re.IGNORECASE,
)

_MAX_FEATURES = 12
_TITLE_MAX = 80

_EFFORT_BY_COMPLEXITY = {
    "low": "1 sprint",
    "medium": "2-3 sprints",
    "high": "4+ sprints",
}

_DEV_HOURS = {"low": 4.0, "medium": 8.0, "high": 16.0}


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def split_features(text: str) -> list[str]:
    """Break requirement text into distinct feature clauses, in order."""
    features: list[str] = []
    seen: set[str] = set()
    for raw in _CLAUSE_SPLIT_RE.split(text):
        clause = _BULLET_RE.sub("", raw).strip(" ,:-")
        clause = _LEAD_IN_RE.sub("", clause).strip()
        if len(clause.split()) < 2:
            continue
        key = clause.lower()
        if key in seen:
            continue
        seen.add(key)
        features.append(clause)
        if len(features) >= _MAX_FEATURES:
            break
    if not features and text.strip():
        features.append(text.strip())
    return features


def detect_priority(text: str, default: Priority = Priority.MEDIUM) -> Priority:
    lower = text.lower()
    if _CRITICAL_RE.search(lower):
        return Priority.CRITICAL
    if _HIGH_RE.search(lower):
        return Priority.HIGH
    if _LOW_RE.search(lower):
        return Priority.LOW
    return default


def theme_for(feature: str) -> str | None:
    lower = feature.lower()
    for name, pattern in _THEMES:
        if pattern.search(lower):
            return name
    return None


def _complexity(features: list[str], themes: list[str], text: str) -> str:
    score = len(features) + len(themes)
    if "Integrations" in themes or "Payments & Billing" in themes:
        score += 2
    if len(text.split()) > 120:
        score += 2
    if score <= 3:
        return "low"
    if score <= 7:
        return "medium"
    return "high"


def _title(feature: str) -> str:
    title = feature[0].upper() + feature[1:]
    if len(title) > _TITLE_MAX:
        title = title[: _TITLE_MAX - 1].rstrip() + "…"
    return title


# ═══════════════════════════════════════════════════════════════════════════════
# KEYWORD ANALYZER
# ═══════════════════════════════════════════════════════════════════════════════

class KeywordAnalyzer:
    """Regex-based breakdown: one epic per theme, one story per feature.

    Confidence rises with how many features matched a known theme and with
    how much there was to go on; vague one-liners score Low.
    """

    def analyze(self, text: str) -> Breakdown:
        features = split_features(text)
        overall_priority = detect_priority(text)

        grouped: dict[str, list[str]] = {}
        for feature in features:
            grouped.setdefault(theme_for(feature) or _GENERAL_THEME, []).append(feature)
        themes = [t for t in grouped if t != _GENERAL_THEME]

        complexity = _complexity(features, themes, text)
        themed = sum(len(v) for k, v in grouped.items() if k != _GENERAL_THEME)
        matched_ratio = themed / len(features) if features else 0.0
        confidence = 0.45 + 0.35 * matched_ratio + min(0.15, 0.03 * len(features))
        if len(text.split()) < 5:
            confidence -= 0.1
        confidence = round(clamp_confidence(confidence), 2)

        epics = [
            self._epic(theme, items, overall_priority, complexity)
            for theme, items in grouped.items()
        ]

        breakdown = Breakdown(
            parsed_intent=self._intent(text, len(features), list(grouped)),
            extracted_entities={
                "features": features,
                "priority": overall_priority.value,
                "complexity": complexity,
                "estimated_effort": _EFFORT_BY_COMPLEXITY[complexity],
                "themes": list(grouped),
            },
            suggested_epics=epics,
            confidence=confidence,
        )
        logger.debug(
            "requirement_classified",
            features=len(features),
            epics=len(epics),
            complexity=complexity,
            confidence=confidence,
        )
        return breakdown

    @staticmethod
    def _intent(text: str, feature_count: int, themes: list[str]) -> str:
        lower = text.lower()
        if _FIX_RE.search(lower):
            verb = "Fix"
        elif _IMPROVE_RE.search(lower):
            verb = "Improve"
        else:
            verb = "Build"
        noun = "feature" if feature_count == 1 else "features"
        return f"{verb} {feature_count} {noun} across {', '.join(themes)}"

    def _epic(
        self,
        theme: str,
        features: list[str],
        default_priority: Priority,
        complexity: str,
    ) -> EpicDraft:
        stories = [self._story(f, theme, default_priority, complexity) for f in features]
        priorities = [s.priority for s in stories]
        order = list(Priority)
        epic_priority = max(priorities, key=order.index) if priorities else default_priority
        return EpicDraft(
            title=theme,
            description=f"{len(stories)} requirement(s) grouped under {theme.lower()}",
            priority=epic_priority,
            confidence=round(sum(s.confidence for s in stories) / len(stories), 2),
            stories=tuple(stories),
        )

    @staticmethod
    def _story(
        feature: str,
        theme: str,
        default_priority: Priority,
        complexity: str,
    ) -> StoryDraft:
        title = _title(feature)
        lower = feature.lower()
        priority = detect_priority(feature, default_priority)

        criteria = [
            f"{title} is available to users",
            "Invalid input is rejected with a clear message",
        ]
        if theme == "Authentication & Access":
            criteria.append("Unauthorized requests are denied")
        elif theme == "Notifications":
            criteria.append("Recipients can opt out")
        criteria.append("Behaviour is covered by automated tests")

        dev_hours = _DEV_HOURS[complexity]
        tasks: list[TaskDraft] = []
        if _UI_RE.search(lower):
            tasks.append(TaskDraft(
                title=f"Design {title}",
                task_type=TaskType.DESIGN,
                priority=priority,
                estimated_hours=4.0,
            ))
        tasks.append(TaskDraft(
            title=f"Implement {title}",
            task_type=TaskType.DEVELOPMENT,
            priority=priority,
            estimated_hours=dev_hours,
        ))
        tasks.append(TaskDraft(
            title=f"Test {title}",
            task_type=TaskType.TESTING,
            priority=priority,
            estimated_hours=dev_hours / 2,
        ))
        if _DOCS_RE.search(lower):
            tasks.append(TaskDraft(
                title=f"Document {title}",
                task_type=TaskType.DOCUMENTATION,
                priority=priority,
                estimated_hours=2.0,
            ))
        if _DEPLOY_RE.search(lower):
            tasks.append(TaskDraft(
                title=f"Deploy {title}",
                task_type=TaskType.DEPLOYMENT,
                priority=priority,
                estimated_hours=2.0,
            ))

        return StoryDraft(
            title=title,
            description=f"As a user, I want to {lower.rstrip('.')}",
            priority=priority,
            confidence=0.85 if theme != _GENERAL_THEME else 0.6,
            acceptance_criteria=tuple(criteria),
            tasks=tuple(tasks),
        )
