"""Tests for the entropy optimizer."""

from __future__ import annotations

import itertools
import json
from dataclasses import replace

import pytest

from conftest import long_paragraph
from miair_engine.domain.entities import Document, RecommendationAction, RecommendationCategory
from miair_engine.domain.exceptions import OptimizationTimeoutError
from miair_engine.services import entropy
from miair_engine.services.document_editor import apply_recommendations
from miair_engine.services.document_parser import parse
from miair_engine.services.entropy_optimizer import EntropyOptimizer, generate_candidates


def _optimize(optimizer, analyzer, document):
    analysis = analyzer.analyze(document)
    return analysis, *optimizer.optimize(document, analysis.units, analysis.scores)


class TestMissingSections:
    def test_readme_gets_license_section(self, optimizer, analyzer, readme):
        analysis, measurement, recs = _optimize(optimizer, analyzer, readme)
        assert measurement.value == 0.0
        assert measurement.prior == 0.0
        assert len(recs) == 1
        rec = recs[0]
        assert rec.action is RecommendationAction.ADD_SECTION
        assert rec.category is RecommendationCategory.COMPLETENESS
        assert rec.details == ("License",)
        assert rec.rank == 1
        assert rec.priority == 0.0
        assert rec.suggestion == (
            "## License\n\nState the license under which this project is distributed."
        )

    def test_applied_section_completes_the_document(self, optimizer, analyzer, readme):
        _, _, recs = _optimize(optimizer, analyzer, readme)
        improved = analyzer.analyze(apply_recommendations(readme, recs))
        assert improved.scores.completeness == 100.0
        assert improved.entropy.value == 0.0


class TestMessyDocument:
    def test_every_disorder_gets_a_fix(self, optimizer, analyzer, messy):
        _, _, recs = _optimize(optimizer, analyzer, messy)
        assert [r.action for r in recs] == [
            RecommendationAction.REDACT_SECRET,
            RecommendationAction.REMOVE_DUPLICATE,
            RecommendationAction.SPLIT_PARAGRAPH,
            RecommendationAction.FLAG_UNSAFE_COMMAND,
            RecommendationAction.CLARIFY_WORDING,
        ]
        assert [r.rank for r in recs] == [1, 2, 3, 4, 5]
        assert recs[-1].details == ("basically", "simply")

    def test_priorities_are_non_increasing(self, optimizer, analyzer, messy):
        _, _, recs = _optimize(optimizer, analyzer, messy)
        assert all(a.priority >= b.priority for a, b in zip(recs, recs[1:]))

    def test_every_prefix_lowers_entropy(self, optimizer, analyzer, messy):
        analysis, measurement, recs = _optimize(optimizer, analyzer, messy)
        values = [
            entropy.measure(parse(apply_recommendations(messy, recs[:k]))).value
            for k in range(len(recs) + 1)
        ]
        assert values[0] == analysis.entropy.value
        assert all(b < a for a, b in zip(values, values[1:]))
        assert values[-1] == measurement.value
        assert measurement.prior == analysis.entropy.value
        assert measurement.reduction_pct > 0

    def test_result_is_stable(self, optimizer, analyzer, messy):
        _, _, recs = _optimize(optimizer, analyzer, messy)
        improved = apply_recommendations(messy, recs)
        _, _, again = _optimize(optimizer, analyzer, improved)
        assert again == []

    def test_deterministic(self, optimizer, analyzer, messy):
        assert _optimize(optimizer, analyzer, messy) == _optimize(optimizer, analyzer, messy)

    def test_security_candidates_skipped_at_full_security(self, optimizer, analyzer, messy):
        analysis = analyzer.analyze(messy)
        scores = replace(analysis.scores, security=100.0)
        _, recs = optimizer.optimize(messy, analysis.units, scores)
        assert {r.category for r in recs} == {
            RecommendationCategory.STRUCTURE,
            RecommendationCategory.STYLE,
        }

    def test_notebook(self, optimizer, analyzer, notebook):
        _, _, recs = _optimize(optimizer, analyzer, notebook)
        assert [r.action for r in recs] == [RecommendationAction.CLARIFY_WORDING]
        data = json.loads(apply_recommendations(notebook, recs).text)
        assert "".join(data["cells"][0]["source"]).endswith(
            "Load the dataset before plotting anything.\n"
        )


class TestTies:
    def test_capped_ties_follow_document_order(self, optimizer, analyzer):
        document = Document(
            f"# Guide\n\nBasically {long_paragraph(30)}\n\n"
            "Simply restart the service afterwards.\n"
        )
        analysis, _, recs = _optimize(optimizer, analyzer, document)
        assert [(r.action, r.round, r.priority) for r in recs[1:]] == [
            (RecommendationAction.CLARIFY_WORDING, 2, 4.0),
            (RecommendationAction.CLARIFY_WORDING, 1, 4.0),
        ]
        assert recs[0].action is RecommendationAction.SPLIT_PARAGRAPH
        assert recs[1].span.start < recs[2].span.start
        assert all(a.priority >= b.priority for a, b in zip(recs, recs[1:]))

        values = [
            entropy.measure(parse(apply_recommendations(document, recs[:k]))).value
            for k in range(len(recs) + 1)
        ]
        assert values[0] == analysis.entropy.value
        assert all(b < a for a, b in zip(values, values[1:]))
        assert "Basically" not in apply_recommendations(document, recs).text

    def test_same_round_ties_keep_document_order(self, optimizer, analyzer):
        document = Document("Simply start here.\n\nBasically stop there.\n")
        _, _, recs = _optimize(optimizer, analyzer, document)
        assert [r.target_index for r in recs] == [0, 1]


class TestCandidates:
    def test_duplicate_names_its_canonical(self, messy):
        units = parse(messy)
        duplicates = [
            c.to_recommendation(1)
            for c in generate_candidates(units)
            if c.action is RecommendationAction.REMOVE_DUPLICATE
        ]
        assert len(duplicates) == 1
        target, canonical = duplicates[0].unit_indices
        assert canonical == target - 1
        assert duplicates[0].span == units[target].span

    def test_security_can_be_excluded(self, messy):
        actions = {c.action for c in generate_candidates(parse(messy), include_security=False)}
        assert RecommendationAction.REDACT_SECRET not in actions
        assert RecommendationAction.FLAG_UNSAFE_COMMAND not in actions


class TestBudgets:
    def test_iteration_budget_returns_best_effort(self, analyzer, messy):
        analysis = analyzer.analyze(messy)
        with pytest.raises(OptimizationTimeoutError) as info:
            EntropyOptimizer(max_iterations=1).optimize(messy, analysis.units, analysis.scores)
        exc = info.value
        assert exc.hard is False
        assert len(exc.recommendations) == 5
        assert [r.rank for r in exc.recommendations] == [1, 2, 3, 4, 5]
        assert exc.entropy.value < analysis.entropy.value
        assert exc.kind == "optimization_timeout"

    def test_hard_timeout(self, analyzer, messy):
        analysis = analyzer.analyze(messy)
        optimizer = EntropyOptimizer(hard_timeout=5, clock=itertools.count(0, 10).__next__)
        with pytest.raises(OptimizationTimeoutError) as info:
            optimizer.optimize(messy, analysis.units, analysis.scores)
        assert info.value.hard is True
        assert info.value.recommendations == ()

    def test_invalid_budget(self):
        with pytest.raises(ValueError):
            EntropyOptimizer(max_iterations=0)
