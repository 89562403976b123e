"""Analyzer — parse, label, score and measure one document."""

from __future__ import annotations

import logging
import warnings

from miair_engine.domain.entities import AnalysisResult, AnalysisWarning, Document
from miair_engine.domain.exceptions import LargeInputWarning
from miair_engine.domain.ports.sensitivity_classifier import SensitivityClassifier
from miair_engine.services import entropy
from miair_engine.services.document_parser import parse
from miair_engine.services.quality_scorer import score_document
from miair_engine.services.security_sentinel import scan_unit
from miair_engine.services.sensitivity import CombinedClassifier, label_units

logger = logging.getLogger(__name__)

DEFAULT_LARGE_INPUT_BYTES = 1024 * 1024


class Analyzer:
    """First pipeline stage.

    Analysis is a pure function of the document: there is no randomness,
    clock or shared state, so identical input always yields identical
    scores and entropy.
    """

    def __init__(
        self,
        classifier: SensitivityClassifier | None = None,
        *,
        large_input_bytes: int = DEFAULT_LARGE_INPUT_BYTES,
    ) -> None:
        self._classifier = classifier or CombinedClassifier()
        self._large_input_bytes = large_input_bytes

    @property
    def classifier(self) -> SensitivityClassifier:
        return self._classifier

    def analyze(self, document: Document, prior: float | None = None) -> AnalysisResult:
        """Return scores, entropy and units for *document*.

        Raises :class:`MalformedInputError` when the document is empty,
        binary or yields no structural unit.  Documents larger than the
        large-input threshold emit :class:`LargeInputWarning` and carry an
        :class:`AnalysisWarning` on the result.
        """
        advisories: list[AnalysisWarning] = []
        size = document.size_bytes
        if size > self._large_input_bytes:
            warning = LargeInputWarning(size, self._large_input_bytes)
            logger.warning("Large input (%d bytes), analysis continues", size)
            warnings.warn(warning, stacklevel=2)
            advisories.append(AnalysisWarning(LargeInputWarning.kind, str(warning)))

        units = label_units(parse(document), self._classifier)
        findings = [finding for unit in units for finding in scan_unit(unit)]
        measurement = entropy.measure(units, prior=prior)
        scores = score_document(units, document.kind, findings, measurement)

        logger.debug(
            "Analyzed %s: %d units, entropy %.3f bits, scores %s",
            document.name or document.format.value,
            len(units),
            measurement.value,
            scores.as_dict(),
        )
        return AnalysisResult(
            document=document,
            scores=scores,
            entropy=measurement,
            units=tuple(units),
            findings=tuple(findings),
            warnings=tuple(advisories),
        )
