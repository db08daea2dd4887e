"""Requirement analysis workflow.

    DRAFT ──analyze──▶ SCORED ──accept──▶ ACCEPTED  (cascade into the store)
                              └─reject──▶ REJECTED  (history only)

Scored analyses wait in the pipeline's pending map. Only a decision moves
them into the store's history, and once there they never change.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import replace
from typing import Awaitable, Callable

import structlog

from keystone.config import settings
from keystone.core.errors import AnalysisNotFound, ValidationFailure
from keystone.core.models import (
    ActivityDraft,
    ActivityType,
    AnalysisFeedback,
    AnalysisState,
    AuditActionType,
    AuditDraft,
    RequirementAnalysis,
    RiskLevel,
)
from keystone.core.store import EntityStore
from keystone.pipeline.analyzer import Analyzer, KeywordAnalyzer
from keystone.pipeline.cascade import CascadeResult, cascade_breakdown

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6


def confidence_label(score: float) -> str:
    if score >= HIGH_CONFIDENCE:
        return "High"
    if score >= MEDIUM_CONFIDENCE:
        return "Medium"
    return "Low"


class RequirementPipeline:
    """Turns requirement text into a scored breakdown and applies decisions."""

    def __init__(
        self,
        store: EntityStore,
        analyzer: Analyzer | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        delay_s: float | None = None,
        default_agent_id: str | None = None,
        cache_limit: int | None = None,
    ) -> None:
        self._store = store
        self._analyzer = analyzer or KeywordAnalyzer()
        self._sleep = sleep
        self._delay_s = settings.analysis_delay_s if delay_s is None else delay_s
        self._default_agent_id = default_agent_id or settings.analysis_agent_id
        self._cache_limit = max(1, cache_limit or settings.analysis_cache_limit)
        self._pending: OrderedDict[str, RequirementAnalysis] = OrderedDict()
        self._cascades: OrderedDict[str, CascadeResult] = OrderedDict()

    # ── Precondition ─────────────────────────────────────────────────

    def _problems(self, text: str | None, project_id: str | None) -> list[ValidationFailure]:
        problems = []
        if not text or not text.strip():
            problems.append(ValidationFailure("text", "requirement text is empty"))
        if not project_id:
            problems.append(ValidationFailure("project_id", "no project selected"))
        elif self._store.get_project(project_id) is None:
            problems.append(ValidationFailure("project_id", f"unknown project '{project_id}'"))
        return problems

    def validate(self, text: str | None, project_id: str | None) -> list[str]:
        """Reasons analysis is blocked; empty when it may proceed."""
        return [str(p) for p in self._problems(text, project_id)]

    def can_analyze(self, text: str | None, project_id: str | None) -> bool:
        return not self._problems(text, project_id)

    # ── Draft → Scored ───────────────────────────────────────────────

    async def analyze(
        self,
        text: str,
        project_id: str,
        agent_id: str | None = None,
    ) -> RequirementAnalysis:
        problems = self._problems(text, project_id)
        if problems:
            raise problems[0]

        draft = RequirementAnalysis(
            id=self._store.new_id("analysis"),
            original_text=text.strip(),
            project_id=project_id,
            agent_id=agent_id or self._default_agent_id,
            timestamp=self._store.now(),
            state=AnalysisState.DRAFT,
        )
        logger.info(
            "requirement_analysis_started",
            analysis_id=draft.id,
            project_id=project_id,
            agent_id=draft.agent_id,
        )

        await self._sleep(self._delay_s)

        breakdown = self._analyzer.analyze(draft.original_text)
        scored = replace(
            draft,
            state=AnalysisState.SCORED,
            parsed_intent=breakdown.parsed_intent,
            extracted_entities=dict(breakdown.extracted_entities),
            suggested_epics=tuple(breakdown.suggested_epics),
            confidence=breakdown.confidence,
        )
        self._pending[scored.id] = scored
        while len(self._pending) > self._cache_limit:
            evicted, _ = self._pending.popitem(last=False)
            logger.warning("pending_analysis_evicted", analysis_id=evicted)

        logger.info(
            "requirement_analysis_scored",
            analysis_id=scored.id,
            confidence=scored.confidence,
            label=confidence_label(scored.confidence),
            epics=len(scored.suggested_epics),
        )
        return scored

    # ── Scored → Accepted / Rejected ─────────────────────────────────

    @property
    def pending(self) -> list[RequirementAnalysis]:
        return list(self._pending.values())

    def get(self, analysis_id: str) -> RequirementAnalysis:
        analysis = self._pending.get(analysis_id) or self._store.get_requirement_analysis(analysis_id)
        if analysis is None:
            raise AnalysisNotFound(analysis_id)
        return analysis

    def accept(self, analysis_id: str) -> CascadeResult:
        """Record the analysis as accepted and cascade its epics into the store."""
        store = self._store
        with store.locked():
            recorded = store.get_requirement_analysis(analysis_id)
            if recorded is not None:
                logger.warning(
                    "analysis_already_decided",
                    analysis_id=analysis_id,
                    state=recorded.state.value,
                    attempted="accept",
                )
                return self._cascades.get(
                    analysis_id,
                    CascadeResult(project_id=recorded.project_id, analysis=recorded),
                )

            scored = self._pending.get(analysis_id)
            if scored is None:
                raise AnalysisNotFound(analysis_id)

            # Raises ValidationFailure before anything is written if the
            # project was deleted while the analysis waited.
            result = cascade_breakdown(
                store,
                scored.suggested_epics,
                project_id=scored.project_id,
                generated_by=scored.agent_id,
                requirement_id=scored.id,
            )

            accepted = replace(
                scored,
                state=AnalysisState.ACCEPTED,
                feedback=AnalysisFeedback.ACCEPTED,
            )
            store.record_analysis(accepted)
            del self._pending[analysis_id]

            summary = (
                f"Generated {len(result.epics)} epics "
                f"({len(result.stories)} stories, {len(result.tasks)} tasks)"
            )
            store.add_activity(ActivityDraft(
                type=ActivityType.AGENT_DECISION,
                title="Requirement analysis accepted",
                description=summary,
                risk_level=RiskLevel.LOW,
                agent_id=accepted.agent_id,
                project_id=accepted.project_id,
            ))
            store.add_audit_log(AuditDraft(
                actor=store.current_user,
                action="Accepted requirement analysis",
                action_type=AuditActionType.APPROVE,
                details=f"{summary} at {confidence_label(accepted.confidence).lower()} confidence",
                project_id=accepted.project_id,
                communication_trace=(accepted.id,),
            ))

            result = replace(result, analysis=accepted)
            self._cascades[analysis_id] = result
            while len(self._cascades) > self._cache_limit:
                self._cascades.popitem(last=False)

        logger.info(
            "requirement_analysis_accepted",
            analysis_id=analysis_id,
            created=result.created,
        )
        return result

    def reject(self, analysis_id: str) -> RequirementAnalysis:
        """Record the analysis as rejected. Nothing is created."""
        store = self._store
        with store.locked():
            recorded = store.get_requirement_analysis(analysis_id)
            if recorded is not None:
                logger.warning(
                    "analysis_already_decided",
                    analysis_id=analysis_id,
                    state=recorded.state.value,
                    attempted="reject",
                )
                return recorded

            scored = self._pending.get(analysis_id)
            if scored is None:
                raise AnalysisNotFound(analysis_id)

            rejected = replace(
                scored,
                state=AnalysisState.REJECTED,
                feedback=AnalysisFeedback.REJECTED,
            )
            store.record_analysis(rejected)
            del self._pending[analysis_id]

            store.add_audit_log(AuditDraft(
                actor=store.current_user,
                action="Rejected requirement analysis",
                action_type=AuditActionType.REJECT,
                details=f"Discarded {len(rejected.suggested_epics)} suggested epics",
                project_id=rejected.project_id,
                communication_trace=(rejected.id,),
            ))

        logger.info("requirement_analysis_rejected", analysis_id=analysis_id)
        return rejected

    # ── History ──────────────────────────────────────────────────────

    def history(
        self,
        feedback: AnalysisFeedback | str | None = None,
        search: str | None = None,
    ) -> list[RequirementAnalysis]:
        """Decided analyses, newest first, optionally filtered."""
        wanted = AnalysisFeedback(feedback) if feedback else None
        needle = (search or "").strip().lower()
        results = []
        for analysis in self._store.requirement_analyses:
            if wanted is not None and analysis.feedback != wanted:
                continue
            if needle and needle not in analysis.original_text.lower() \
                    and needle not in analysis.parsed_intent.lower():
                continue
            results.append(analysis)
        return results

    def average_confidence(self) -> float:
        analyses = self._store.requirement_analyses
        if not analyses:
            return 0.0
        return sum(a.confidence for a in analyses) / len(analyses)
