"""Composition root — wires settings, adapters and services into one engine."""

from __future__ import annotations

import logging
from typing import Sequence

import httpx

from miair_engine.domain.entities import (
    AnalysisResult,
    Document,
    EnhancementResult,
    EntropyMeasurement,
    Recommendation,
    RoutingPolicy,
)
from miair_engine.domain.ports.rewrite_backend import RewriteBackend
from miair_engine.domain.ports.sensitivity_classifier import SensitivityClassifier
from miair_engine.infrastructure.config import Settings, get_settings
from miair_engine.infrastructure.local_rules_adapter import LocalRulesBackend
from miair_engine.infrastructure.ollama_adapter import OllamaBackend
from miair_engine.infrastructure.openai_adapter import OpenAIBackend
from miair_engine.services.analyzer import Analyzer
from miair_engine.services.batch import BatchItemResult, BatchProcessor
from miair_engine.services.enhancer import BackendGate, EnhancerOrchestrator
from miair_engine.services.entropy_optimizer import EntropyOptimizer

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings | None = None) -> None:
    """Install the engine's log format on the root logger."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    )


class MiairEngine:
    """Facade over the three pipeline stages and batch processing."""

    def __init__(
        self,
        analyzer: Analyzer,
        optimizer: EntropyOptimizer,
        orchestrator: EnhancerOrchestrator,
        *,
        default_policy: RoutingPolicy = RoutingPolicy.HYBRID,
        max_concurrent_documents: int = 4,
        backends: Sequence[RewriteBackend] = (),
    ) -> None:
        self.analyzer = analyzer
        self.optimizer = optimizer
        self.orchestrator = orchestrator
        self._default_policy = default_policy
        self._max_concurrent_documents = max_concurrent_documents
        self._backends = tuple(backends)

    def analyze(self, document: Document) -> AnalysisResult:
        return self.analyzer.analyze(document)

    def optimize(self, document: Document) -> tuple[EntropyMeasurement, list[Recommendation]]:
        """Analyze *document* and return the optimizer's measurement and recommendations."""
        analysis = self.analyzer.analyze(document)
        return self.optimizer.optimize(document, analysis.units, analysis.scores)

    async def enhance(
        self,
        document: Document,
        recommendations: Sequence[Recommendation] | None = None,
        routing_policy: RoutingPolicy | str | None = None,
    ) -> EnhancementResult:
        return await self.orchestrator.enhance(
            document, recommendations, routing_policy or self._default_policy
        )

    def new_batch(self) -> BatchProcessor:
        """A batch processor whose :meth:`~BatchProcessor.cancel` the caller controls."""
        return BatchProcessor(self.orchestrator, self._max_concurrent_documents)

    async def enhance_batch(
        self,
        documents: Sequence[Document],
        routing_policy: RoutingPolicy | str | None = None,
    ) -> list[BatchItemResult]:
        return await self.new_batch().run(documents, routing_policy or self._default_policy)

    async def aclose(self) -> None:
        """Release HTTP resources held by model-backed adapters."""
        for backend in self._backends:
            close = getattr(backend, "close", None)
            if close is not None:
                await close()


def build_local_backend(settings: Settings) -> RewriteBackend:
    if settings.local_backend == "ollama":
        client = httpx.AsyncClient(timeout=settings.local_timeout_s)
        return OllamaBackend(client, settings.ollama_base_url, settings.ollama_model)
    return LocalRulesBackend()


def build_external_backend(settings: Settings) -> RewriteBackend | None:
    if settings.openai_api_key is None:
        logger.info("No OpenAI API key configured; external backend disabled")
        return None
    return OpenAIBackend(
        settings.openai_api_key.get_secret_value(),
        settings.openai_model,
        max_unit_tokens=settings.max_external_unit_tokens,
    )


def build_engine(
    settings: Settings | None = None,
    *,
    classifier: SensitivityClassifier | None = None,
    local_backend: RewriteBackend | None = None,
    external_backend: RewriteBackend | None = None,
) -> MiairEngine:
    """Build a fully wired :class:`MiairEngine`.

    Backends default to the ones *settings* describe; pass them explicitly
    to substitute fakes or custom adapters.
    """
    settings = settings or get_settings()
    local = local_backend or build_local_backend(settings)
    external = external_backend if external_backend is not None else build_external_backend(settings)

    analyzer = Analyzer(classifier, large_input_bytes=settings.large_input_bytes)
    optimizer = EntropyOptimizer(
        max_iterations=settings.optimizer_max_iterations,
        hard_timeout=settings.optimizer_hard_timeout_s,
    )
    gate = BackendGate(
        settings.max_concurrent_backend_calls,
        local_timeout=settings.local_timeout_s,
        external_timeout=settings.external_timeout_s,
    )
    orchestrator = EnhancerOrchestrator(
        analyzer,
        optimizer,
        local,
        external,
        gate=gate,
        smart_route_threshold=settings.smart_route_threshold,
    )
    return MiairEngine(
        analyzer,
        optimizer,
        orchestrator,
        default_policy=settings.default_routing_policy,
        max_concurrent_documents=settings.max_concurrent_documents,
        backends=tuple(b for b in (local, external) if b is not None),
    )
