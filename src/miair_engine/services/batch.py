"""Batch processing — independent documents through concurrent pipelines."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from miair_engine.domain.entities import Document, EnhancementResult, RoutingPolicy
from miair_engine.domain.exceptions import MiairError
from miair_engine.services.enhancer import EnhancerOrchestrator

logger = logging.getLogger(__name__)


class BatchStatus(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class BatchItemResult:
    """Outcome for one document of a batch, in input order."""

    index: int
    name: str | None
    status: BatchStatus
    result: EnhancementResult | None = None
    error_kind: str | None = None
    message: str = ""
    stage: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is BatchStatus.COMPLETE


class BatchProcessor:
    """Runs whole pipelines concurrently, bounded by ``max_concurrent_documents``.

    Documents share no mutable state, so one document's failure never
    affects its siblings.  :meth:`cancel` stops new pipelines from starting;
    pipelines already running finish normally.  Cancellation is permanent
    for the processor instance.
    """

    def __init__(
        self, orchestrator: EnhancerOrchestrator, max_concurrent_documents: int = 4
    ) -> None:
        self._orchestrator = orchestrator
        self._max_concurrent = max_concurrent_documents
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop issuing new per-document pipelines."""
        if not self._cancelled:
            logger.info("Batch cancelled; in-flight documents will finish")
        self._cancelled = True

    async def run(
        self,
        documents: Sequence[Document],
        routing_policy: RoutingPolicy | str = RoutingPolicy.HYBRID,
    ) -> list[BatchItemResult]:
        policy = RoutingPolicy.resolve(routing_policy)
        sem = asyncio.Semaphore(self._max_concurrent)

        async def _run_one(index: int, document: Document) -> BatchItemResult:
            async with sem:
                if self._cancelled:
                    return BatchItemResult(index, document.name, BatchStatus.CANCELLED)
                try:
                    result = await self._orchestrator.enhance(document, routing_policy=policy)
                except MiairError as exc:
                    return BatchItemResult(
                        index,
                        document.name,
                        BatchStatus.FAILED,
                        error_kind=exc.kind,
                        message=str(exc),
                        stage=exc.stage,
                    )
                except Exception as exc:
                    logger.error(
                        "Unexpected failure on document %d (%s)",
                        index,
                        document.name,
                        exc_info=True,
                    )
                    return BatchItemResult(
                        index,
                        document.name,
                        BatchStatus.FAILED,
                        error_kind="internal_error",
                        message=str(exc),
                    )
                return BatchItemResult(index, document.name, BatchStatus.COMPLETE, result=result)

        results = await asyncio.gather(*(_run_one(i, d) for i, d in enumerate(documents)))
        logger.info(
            "Batch finished: %d complete, %d failed, %d cancelled",
            sum(1 for r in results if r.status is BatchStatus.COMPLETE),
            sum(1 for r in results if r.status is BatchStatus.FAILED),
            sum(1 for r in results if r.status is BatchStatus.CANCELLED),
        )
        return list(results)
