"""Tests for the Analyzer stage."""

from __future__ import annotations

import pytest

from miair_engine.domain.entities import (
    Document,
    DocumentFormat,
    SensitivityLabel,
    UnitKind,
)
from miair_engine.domain.exceptions import LargeInputWarning, MalformedInputError
from miair_engine.services.analyzer import Analyzer
from miair_engine.services.sensitivity import MarkerClassifier


class TestAnalyze:
    def test_readme_missing_license(self, analyzer, readme):
        result = analyzer.analyze(readme)
        assert result.scores.completeness == pytest.approx(66.67)
        assert result.scores.security == 100.0
        assert result.scores.miair == 100.0
        assert result.entropy.value == 0.0
        assert result.findings == ()
        assert result.warnings == ()

    def test_deterministic(self, analyzer, messy):
        assert analyzer.analyze(messy) == analyzer.analyze(messy)
        assert Analyzer().analyze(messy).scores == analyzer.analyze(messy).scores

    def test_unpacks_as_scores_entropy_units(self, analyzer, messy):
        scores, measurement, units = analyzer.analyze(messy)
        assert scores.security == 60.0
        assert measurement.value > 0
        assert units[0].kind is UnitKind.HEADING

    def test_findings_and_labels(self, analyzer, messy):
        result = analyzer.analyze(messy)
        assert {f.label for f in result.findings} == {"GENERIC_KEY", "PIPE_TO_SHELL"}
        leaked = next(u for u in result.units if "api_key" in u.text)
        assert leaked.sensitivity is SensitivityLabel.SENSITIVE

    def test_prior_is_recorded(self, analyzer, readme):
        assert analyzer.analyze(readme, prior=40.0).entropy.prior == 40.0

    def test_custom_classifier(self, messy):
        result = Analyzer(MarkerClassifier()).analyze(messy)
        assert {u.sensitivity for u in result.units} == {SensitivityLabel.UNLABELED}

    def test_other_formats(self, analyzer):
        result = analyzer.analyze(
            Document("Title\n=====\n\nA short introduction.\n", format=DocumentFormat.RST)
        )
        assert [u.kind for u in result.units] == [UnitKind.HEADING, UnitKind.PARAGRAPH]


class TestMalformed:
    def test_empty_bytes(self, analyzer):
        with pytest.raises(MalformedInputError):
            analyzer.analyze(Document.from_bytes(b""))

    def test_binary(self, analyzer):
        with pytest.raises(MalformedInputError):
            analyzer.analyze(Document("\x00\x01\x02binary"))


class TestLargeInput:
    def test_warns_and_continues(self, readme):
        analyzer = Analyzer(large_input_bytes=64)
        with pytest.warns(LargeInputWarning):
            result = analyzer.analyze(readme)
        assert [w.kind for w in result.warnings] == ["large_input"]
        assert result.scores.completeness == pytest.approx(66.67)

    def test_below_threshold_is_silent(self, readme, recwarn):
        Analyzer().analyze(readme)
        assert not [w for w in recwarn if issubclass(w.category, LargeInputWarning)]
