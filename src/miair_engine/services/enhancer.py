"""Enhancer orchestrator — the analyze → optimize → rewrite → rescore pipeline.

This is the single entry point for enhancement.  It depends only on the
:class:`RewriteBackend` port and the pure service modules; the composition
root injects concrete backends at runtime.

Within one document rewriting is strictly sequential: every applied rewrite
shifts the offsets of the units after it, so each recommendation is
re-targeted against the freshly parsed document before it is applied.
Recommendations are planned against a simulation in which every earlier
recommendation succeeded; a rewrite that fails or comes back different only
invalidates the later recommendations whose targets it touched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from miair_engine.domain.entities import (
    AnalysisResult,
    BackendKind,
    Document,
    EnhancementResult,
    PipelineStage,
    Recommendation,
    RecommendationAction,
    RouteTarget,
    RoutingPolicy,
    RoutingReport,
    StructuralUnit,
    UnitOutcome,
    UnitStatus,
)
from miair_engine.domain.exceptions import (
    BackendUnavailableError,
    MalformedInputError,
    MiairError,
    OptimizationTimeoutError,
    RoutingPolicyViolationError,
)
from miair_engine.domain.ports.rewrite_backend import RewriteBackend
from miair_engine.domain.value_objects import Edit
from miair_engine.services import entropy
from miair_engine.services.analyzer import Analyzer
from miair_engine.services.document_editor import DocumentEditor, PlanAlignment, section_anchor
from miair_engine.services.entropy_optimizer import EntropyOptimizer
from miair_engine.services.rewrite_rules import apply_rule
from miair_engine.services.routing import (
    DEFAULT_SMART_ROUTE_THRESHOLD,
    resolve_effective_policy,
    route_label,
)
from miair_engine.services.security_sentinel import sanitize

logger = logging.getLogger(__name__)

_EPSILON = 1e-6


# ── Backend gate ────────────────────────────────────────────────────────────


class BackendGate:
    """Bounded, time-limited access to rewrite backends.

    One semaphore per backend kind caps concurrent calls across every
    document sharing the gate.  External calls get their own (usually
    shorter) timeout; a timed-out call surfaces as
    :class:`BackendUnavailableError`.
    """

    def __init__(
        self,
        max_concurrent: int = 4,
        *,
        local_timeout: float = 120.0,
        external_timeout: float = 30.0,
    ) -> None:
        self._semaphores = {kind: asyncio.Semaphore(max_concurrent) for kind in BackendKind}
        self._timeouts = {BackendKind.LOCAL: local_timeout, BackendKind.EXTERNAL: external_timeout}

    async def call(
        self, backend: RewriteBackend, unit_text: str, recommendation: Recommendation
    ) -> str:
        timeout = self._timeouts[backend.kind]
        async with self._semaphores[backend.kind]:
            try:
                return await asyncio.wait_for(
                    backend.rewrite(unit_text, recommendation), timeout=timeout
                )
            except asyncio.TimeoutError as exc:
                raise BackendUnavailableError(
                    f"Backend '{backend.name}' timed out after {timeout:g}s",
                    unit_index=recommendation.target_index,
                ) from exc


# ── Orchestrator ────────────────────────────────────────────────────────────


class EnhancerOrchestrator:
    """Runs one document through the full enhancement state machine.

    Parameters
    ----------
    analyzer:
        Used before rewriting and again for rescoring.
    optimizer:
        Produces recommendations when the caller supplies none.
    local_backend:
        Backend for units that must stay on the machine.  Must be of kind
        ``local``; anything else is a routing-policy violation.
    external_backend:
        Optional backend for public units.
    gate:
        Shared concurrency / timeout limiter for backend calls.
    smart_route_threshold:
        Sensitive-byte share at which ``smart-route`` chooses ``local-only``.
    """

    def __init__(
        self,
        analyzer: Analyzer,
        optimizer: EntropyOptimizer,
        local_backend: RewriteBackend,
        external_backend: RewriteBackend | None = None,
        *,
        gate: BackendGate | None = None,
        smart_route_threshold: float = DEFAULT_SMART_ROUTE_THRESHOLD,
    ) -> None:
        self._analyzer = analyzer
        self._optimizer = optimizer
        self._local = local_backend
        self._external = external_backend
        self._gate = gate or BackendGate()
        self._threshold = smart_route_threshold

    # ── Public entry point ──────────────────────────────────────────────

    async def enhance(
        self,
        document: Document,
        recommendations: Sequence[Recommendation] | None = None,
        routing_policy: RoutingPolicy | str = RoutingPolicy.HYBRID,
    ) -> EnhancementResult:
        """Apply recommendations through the routed backends and rescore.

        Fatal errors (malformed input, hard optimizer timeout, routing-policy
        violation, every backend call failing) are raised with ``stage`` set
        to the pipeline stage they occurred in.
        """
        policy = RoutingPolicy.resolve(routing_policy)
        stages: list[PipelineStage] = [PipelineStage.PENDING]

        def advance(stage: PipelineStage) -> None:
            stages.append(stage)
            logger.debug("%s: %s", document.name or "document", stage.value)

        try:
            advance(PipelineStage.ANALYZING)
            before = self._analyzer.analyze(document)

            advance(PipelineStage.OPTIMIZING)
            if recommendations is None:
                recommendations = self._optimize(before)

            advance(PipelineStage.REWRITING)
            effective = resolve_effective_policy(policy, before.units, self._threshold)
            logger.info(
                "Enhancing %s under %s (effective %s): %d recommendations",
                document.name or "document",
                policy.value,
                effective.value,
                len(recommendations),
            )
            editor, applied, outcomes = await self._rewrite(
                document, recommendations, effective, before.entropy.value
            )

            advance(PipelineStage.RESCORING)
            after = self._analyzer.analyze(editor.document, prior=before.entropy.value)
        except MiairError as exc:
            exc.stage = stages[-1].value
            logger.warning("Enhancement failed in stage %s: %s", exc.stage, exc)
            raise

        advance(PipelineStage.COMPLETE)
        report = RoutingReport(effective_policy=effective, outcomes=tuple(outcomes))
        logger.info(
            "Enhanced %s: miair %.2f -> %.2f, %d applied, %d failed, %d external calls",
            document.name or "document",
            before.scores.miair,
            after.scores.miair,
            report.applied_count,
            report.failed_count,
            report.external_count,
        )
        return EnhancementResult(
            document=editor.document,
            before=before.scores,
            after=after.scores,
            entropy_before=before.entropy,
            entropy_after=after.entropy,
            applied=tuple(applied),
            report=report,
            stages=tuple(stages),
        )

    # ── Optimization ────────────────────────────────────────────────────

    def _optimize(self, before: AnalysisResult) -> list[Recommendation]:
        try:
            _, recs = self._optimizer.optimize(before.document, before.units, before.scores)
        except OptimizationTimeoutError as exc:
            if exc.hard:
                raise
            logger.warning(
                "Optimizer budget exhausted; continuing with %d best-effort recommendations",
                len(exc.recommendations),
            )
            return list(exc.recommendations)
        return recs

    # ── Sequential rewriting ────────────────────────────────────────────

    def _backend_for(self, route: RouteTarget) -> RewriteBackend | None:
        if route is RouteTarget.LOCAL:
            return self._local
        if route is RouteTarget.EXTERNAL:
            return self._external or self._local
        if route is RouteTarget.EXTERNAL_OR_SKIP:
            return self._external
        return None

    async def _rewrite(
        self,
        document: Document,
        recommendations: Sequence[Recommendation],
        policy: RoutingPolicy,
        baseline: float,
    ) -> tuple[DocumentEditor, list[Recommendation], list[UnitOutcome]]:
        editor = DocumentEditor(document, classifier=self._analyzer.classifier)
        # Recommendations address the plan: every earlier one applied by its rule.
        plan = DocumentEditor(document)
        alignment = PlanAlignment()
        current = baseline
        applied: list[Recommendation] = []
        outcomes: list[UnitOutcome] = []

        for rec in recommendations:
            planned_unit = plan.target(rec)
            if planned_unit is None:
                outcomes.append(_stale(rec, "target unit no longer exists"))
                continue
            planned_text = apply_rule(planned_unit.text, rec)
            if rec.action is RecommendationAction.ADD_SECTION:
                unit = section_anchor(editor.units, document.format)
            else:
                unit = editor.unit_at(alignment.to_actual(planned_unit.span), rec.target_kind)

            if unit is None:
                attempt = _Attempt(
                    _stale(rec, "target unit was changed by a rewrite that did not go as planned")
                )
            else:
                attempt = await self._attempt(editor, unit, rec, policy, current)
            outcomes.append(attempt.outcome)

            planned_edit = plan.replace(planned_unit, planned_text, rec.round)
            if attempt.edit is not None:
                current = attempt.entropy
                applied.append(rec)
                identical = (
                    attempt.text == planned_text
                    and attempt.edit.span == alignment.to_actual(planned_edit.span)
                )
                alignment.record(planned_edit, attempt.edit, identical=identical)
            else:
                unchanged = alignment.project(planned_edit.span)
                alignment.record(
                    planned_edit, Edit(unchanged, unchanged.length, rec.round), identical=False
                )

        calls = [o for o in outcomes if o.called_backend]
        if calls and all(o.error_kind == BackendUnavailableError.kind for o in calls):
            raise BackendUnavailableError(
                f"All {len(calls)} backend call(s) failed; no backend is available"
            )
        return editor, applied, outcomes

    async def _attempt(
        self,
        editor: DocumentEditor,
        unit: StructuralUnit,
        rec: Recommendation,
        policy: RoutingPolicy,
        current: float,
    ) -> _Attempt:
        """Route, call and verify one rewrite; the edit is kept only when entropy does not rise."""
        route = route_label(unit.sensitivity, policy)
        backend = self._backend_for(route)
        if backend is None:
            reason = (
                "no external backend available"
                if route is RouteTarget.EXTERNAL_OR_SKIP
                else f"{unit.sensitivity.value} unit excluded by {policy.value}"
            )
            return _Attempt(
                UnitOutcome(rec.rank, unit.index, route, UnitStatus.SKIPPED, message=reason)
            )

        if backend.kind is not BackendKind.LOCAL and (
            policy is RoutingPolicy.LOCAL_ONLY or unit.sensitivity.is_restricted
        ):
            raise RoutingPolicyViolationError(
                f"{policy.value} would send a {unit.sensitivity.value} unit to "
                f"{backend.kind.value} backend '{backend.name}'",
                unit_index=unit.index,
            )

        text = unit.text
        if backend.kind is BackendKind.EXTERNAL:
            sanitized = sanitize(text)
            if sanitized.redaction_count:
                logger.warning(
                    "Redacted %d potential secret(s) before external rewrite of unit %d",
                    sanitized.redaction_count,
                    unit.index,
                )
            text = sanitized.clean_text

        try:
            rewritten = await self._gate.call(backend, text, rec)
        except Exception as exc:
            logger.debug("Backend %s failed on unit %d", backend.name, unit.index, exc_info=True)
            return _Attempt(
                UnitOutcome(
                    rec.rank,
                    unit.index,
                    route,
                    UnitStatus.FAILED,
                    backend=backend.name,
                    backend_kind=backend.kind,
                    error_kind=getattr(exc, "kind", "backend_error"),
                    message=str(exc),
                )
            )

        checkpoint = editor.checkpoint()
        edit = editor.replace(unit, rewritten, rec.round)
        try:
            value = entropy.measure(editor.units).value
        except MalformedInputError:
            value = None
        if value is None or value > current + _EPSILON:
            editor.restore(checkpoint)
            logger.warning(
                "Reverted rewrite of unit %d by %s: entropy would rise", unit.index, backend.name
            )
            return _Attempt(
                UnitOutcome(
                    rec.rank,
                    unit.index,
                    route,
                    UnitStatus.REVERTED,
                    backend=backend.name,
                    backend_kind=backend.kind,
                    message="rewrite raised document entropy",
                )
            )

        return _Attempt(
            UnitOutcome(
                rec.rank,
                unit.index,
                route,
                UnitStatus.APPLIED,
                backend=backend.name,
                backend_kind=backend.kind,
            ),
            edit=edit,
            text=rewritten,
            entropy=value,
        )


@dataclass(frozen=True, slots=True)
class _Attempt:
    outcome: UnitOutcome
    edit: Edit | None = None
    text: str | None = None
    entropy: float = 0.0


def _stale(rec: Recommendation, message: str) -> UnitOutcome:
    return UnitOutcome(
        rec.rank, rec.target_index, RouteTarget.SKIP, UnitStatus.STALE, message=message
    )
