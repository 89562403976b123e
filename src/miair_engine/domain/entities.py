"""Domain entities — pure data structures with no external dependencies."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterator

from miair_engine.domain.exceptions import MalformedInputError
from miair_engine.domain.value_objects import Span


class DocumentFormat(str, Enum):
    """Declared markup format of a document."""

    MARKDOWN = "markdown"
    RST = "rst"
    ADOC = "adoc"
    HTML = "html"
    PLAIN = "plain"
    TEX = "tex"
    NOTEBOOK = "notebook"

    @classmethod
    def resolve(cls, value: str | DocumentFormat) -> DocumentFormat:
        """Accept a format name, an alias or a file extension."""
        if isinstance(value, DocumentFormat):
            return value
        key = value.strip().lower().lstrip(".")
        fmt = _FORMAT_ALIASES.get(key)
        if fmt is None:
            raise MalformedInputError(f"Unsupported document format: '{value}'")
        return fmt


_FORMAT_ALIASES: dict[str, DocumentFormat] = {
    "markdown": DocumentFormat.MARKDOWN,
    "md": DocumentFormat.MARKDOWN,
    "mdown": DocumentFormat.MARKDOWN,
    "rst": DocumentFormat.RST,
    "restructuredtext": DocumentFormat.RST,
    "rest": DocumentFormat.RST,
    "adoc": DocumentFormat.ADOC,
    "asciidoc": DocumentFormat.ADOC,
    "asc": DocumentFormat.ADOC,
    "html": DocumentFormat.HTML,
    "htm": DocumentFormat.HTML,
    "plain": DocumentFormat.PLAIN,
    "txt": DocumentFormat.PLAIN,
    "text": DocumentFormat.PLAIN,
    "tex": DocumentFormat.TEX,
    "latex": DocumentFormat.TEX,
    "notebook": DocumentFormat.NOTEBOOK,
    "ipynb": DocumentFormat.NOTEBOOK,
}


class DocumentKind(str, Enum):
    """Declared document type — drives the expected-section checklist."""

    README = "readme"
    API_REFERENCE = "api_reference"
    TUTORIAL = "tutorial"
    CHANGELOG = "changelog"
    GENERIC = "generic"

    @classmethod
    def infer(cls, name: str | None) -> DocumentKind:
        """Guess the kind from a file name such as ``README.md``."""
        if not name:
            return cls.GENERIC
        stem = name.replace("\\", "/").rsplit("/", maxsplit=1)[-1].lower()
        if stem.startswith("readme"):
            return cls.README
        if stem.startswith(("changelog", "changes", "history")):
            return cls.CHANGELOG
        if stem.startswith(("api", "reference")):
            return cls.API_REFERENCE
        if stem.startswith(("tutorial", "guide", "howto")):
            return cls.TUTORIAL
        return cls.GENERIC


@dataclass(frozen=True, slots=True)
class Document:
    """An immutable input document.

    Editing never mutates a document; it produces a new one via
    :meth:`with_text`.
    """

    text: str
    format: DocumentFormat = DocumentFormat.MARKDOWN
    kind: DocumentKind = DocumentKind.GENERIC
    name: str | None = None

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        format: str | DocumentFormat = DocumentFormat.MARKDOWN,
        *,
        kind: DocumentKind | None = None,
        name: str | None = None,
    ) -> Document:
        """Decode UTF-8 *data*; undecodable (binary) input is malformed."""
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedInputError(f"Document is not valid UTF-8 text: {exc.reason}") from exc
        return cls(
            text=text,
            format=DocumentFormat.resolve(format),
            kind=kind if kind is not None else DocumentKind.infer(name),
            name=name,
        )

    @property
    def size_bytes(self) -> int:
        return len(self.text.encode("utf-8"))

    def with_text(self, text: str) -> Document:
        return replace(self, text=text)


class UnitKind(str, Enum):
    """Type tag of a structural unit."""

    HEADING = "heading"
    PARAGRAPH = "paragraph"
    CODE_BLOCK = "code_block"
    TABLE = "table"
    LIST = "list"


class SensitivityLabel(str, Enum):
    """Per-unit routing sensitivity; ``UNLABELED`` is handled as sensitive."""

    SENSITIVE = "sensitive"
    PUBLIC = "public"
    UNLABELED = "unlabeled"

    @property
    def is_restricted(self) -> bool:
        return self is not SensitivityLabel.PUBLIC


@dataclass(frozen=True, slots=True)
class StructuralUnit:
    """A contiguous, typed span of a document body."""

    index: int
    kind: UnitKind
    span: Span
    text: str  # raw slice of the body
    content: str  # markup-stripped text used for scoring
    level: int = 0  # heading level, 0 for other kinds
    marker: SensitivityLabel = SensitivityLabel.UNLABELED
    sensitivity: SensitivityLabel = SensitivityLabel.UNLABELED

    @property
    def is_prose(self) -> bool:
        return self.kind in (UnitKind.PARAGRAPH, UnitKind.LIST, UnitKind.TABLE)


@dataclass(frozen=True, slots=True)
class SecurityFinding:
    """A security-relevant match inside one unit."""

    label: str  # e.g. "AWS_KEY", "PIPE_TO_SHELL"
    category: str  # "secret" | "unsafe_command" | "vulnerability"
    unit_index: int
    excerpt: str


@dataclass(frozen=True, slots=True)
class ScoreVector:
    """Four independent 0-100 quality scores."""

    performance: float
    security: float
    completeness: float
    miair: float

    def delta(self, before: ScoreVector) -> ScoreVector:
        """Per-dimension ``self - before`` (may be negative)."""
        return ScoreVector(
            performance=round(self.performance - before.performance, 2),
            security=round(self.security - before.security, 2),
            completeness=round(self.completeness - before.completeness, 2),
            miair=round(self.miair - before.miair, 2),
        )

    def as_dict(self) -> dict[str, float]:
        return {
            "performance": self.performance,
            "security": self.security,
            "completeness": self.completeness,
            "miair": self.miair,
        }


@dataclass(frozen=True, slots=True)
class EntropyMeasurement:
    """Information disorder of a unit sequence, in bits."""

    value: float
    redundancy: float = 0.0
    ambiguity: float = 0.0
    noise: float = 0.0
    hazard: float = 0.0
    sprawl: float = 0.0
    prior: float | None = None

    @property
    def reduction_pct(self) -> float | None:
        """``(prior - value) / prior`` as a percentage, ``None`` without a prior."""
        if self.prior is None or self.prior <= 0:
            return None
        pct = (self.prior - self.value) / self.prior * 100.0
        return round(min(100.0, max(0.0, pct)), 2)


class RecommendationCategory(str, Enum):
    STRUCTURE = "structure"
    SECURITY = "security"
    COMPLETENESS = "completeness"
    STYLE = "style"


class RecommendationAction(str, Enum):
    """Concrete rewrite a recommendation asks for."""

    REMOVE_DUPLICATE = "remove_duplicate"
    REDACT_SECRET = "redact_secret"
    FLAG_UNSAFE_COMMAND = "flag_unsafe_command"
    SPLIT_PARAGRAPH = "split_paragraph"
    CLARIFY_WORDING = "clarify_wording"
    ADD_SECTION = "add_section"

    @property
    def category(self) -> RecommendationCategory:
        return _ACTION_CATEGORY[self]


_ACTION_CATEGORY: dict[RecommendationAction, RecommendationCategory] = {
    RecommendationAction.REMOVE_DUPLICATE: RecommendationCategory.STRUCTURE,
    RecommendationAction.SPLIT_PARAGRAPH: RecommendationCategory.STRUCTURE,
    RecommendationAction.REDACT_SECRET: RecommendationCategory.SECURITY,
    RecommendationAction.FLAG_UNSAFE_COMMAND: RecommendationCategory.SECURITY,
    RecommendationAction.CLARIFY_WORDING: RecommendationCategory.STYLE,
    RecommendationAction.ADD_SECTION: RecommendationCategory.COMPLETENESS,
}


@dataclass(frozen=True, slots=True)
class Recommendation:
    """An actionable, ranked suggestion targeting one or more units.

    ``span`` and ``unit_indices`` address the document state of the
    refinement ``round`` that produced it; ``unit_indices[0]`` is the target.
    ``priority`` is the predicted entropy reduction in bits.
    """

    rank: int
    action: RecommendationAction
    unit_indices: tuple[int, ...]
    span: Span
    target_kind: UnitKind
    priority: float
    message: str
    details: tuple[str, ...] = ()
    suggestion: str | None = None
    round: int = 1

    @property
    def category(self) -> RecommendationCategory:
        return self.action.category

    @property
    def target_index(self) -> int:
        return self.unit_indices[0]


class BackendKind(str, Enum):
    """Where a rewrite backend runs — the only property routing cares about."""

    LOCAL = "local"
    EXTERNAL = "external"


class RoutingPolicy(str, Enum):
    LOCAL_ONLY = "local-only"
    HYBRID = "hybrid"
    EXTERNAL_ONLY = "external-only"
    SMART_ROUTE = "smart-route"

    @classmethod
    def resolve(cls, value: str | RoutingPolicy) -> RoutingPolicy:
        if isinstance(value, RoutingPolicy):
            return value
        key = value.strip().lower().replace("_", "-")
        for policy in cls:
            if policy.value == key:
                return policy
        raise ValueError(f"Unknown routing policy: '{value}'")


class RouteTarget(str, Enum):
    """Backend assignment for one unit."""

    LOCAL = "local"
    EXTERNAL = "external"  # falls back to local when no external backend exists
    EXTERNAL_OR_SKIP = "skip-if-external-unavailable"
    SKIP = "skip"


class UnitStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    STALE = "stale"
    REVERTED = "reverted"


@dataclass(frozen=True, slots=True)
class UnitOutcome:
    """What happened to one recommendation's target unit during enhancement."""

    rank: int
    unit_index: int
    route: RouteTarget
    status: UnitStatus
    backend: str | None = None
    backend_kind: BackendKind | None = None
    error_kind: str | None = None
    message: str = ""

    @property
    def called_backend(self) -> bool:
        return self.status in (UnitStatus.APPLIED, UnitStatus.FAILED, UnitStatus.REVERTED)


@dataclass(frozen=True, slots=True)
class RoutingReport:
    """Per-unit routing outcomes of one enhancement call."""

    effective_policy: RoutingPolicy
    outcomes: tuple[UnitOutcome, ...] = ()

    @property
    def counts(self) -> dict[str, int]:
        """Number of backend calls per backend name."""
        tally: Counter[str] = Counter(
            o.backend for o in self.outcomes if o.called_backend and o.backend
        )
        return dict(sorted(tally.items()))

    @property
    def external_count(self) -> int:
        return sum(
            1 for o in self.outcomes if o.called_backend and o.backend_kind is BackendKind.EXTERNAL
        )

    @property
    def local_count(self) -> int:
        return sum(
            1 for o in self.outcomes if o.called_backend and o.backend_kind is BackendKind.LOCAL
        )

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status is UnitStatus.FAILED)

    @property
    def applied_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status is UnitStatus.APPLIED)

    def failures(self) -> list[UnitOutcome]:
        return [o for o in self.outcomes if o.status is UnitStatus.FAILED]


class PipelineStage(str, Enum):
    """States of one enhancement call."""

    PENDING = "pending"
    ANALYZING = "analyzing"
    OPTIMIZING = "optimizing"
    REWRITING = "rewriting"
    RESCORING = "rescoring"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Output of :meth:`Analyzer.analyze`; unpacks as ``(scores, entropy, units)``."""

    document: Document
    scores: ScoreVector
    entropy: EntropyMeasurement
    units: tuple[StructuralUnit, ...]
    findings: tuple[SecurityFinding, ...] = ()
    warnings: tuple[AnalysisWarning, ...] = ()

    def __iter__(self) -> Iterator[object]:
        return iter((self.scores, self.entropy, self.units))


@dataclass(frozen=True, slots=True)
class AnalysisWarning:
    """Non-fatal advisory attached to an analysis."""

    kind: str
    message: str


@dataclass(frozen=True, slots=True)
class EnhancementResult:
    """The rewritten document plus before/after scores and the routing report."""

    document: Document
    before: ScoreVector
    after: ScoreVector
    entropy_before: EntropyMeasurement
    entropy_after: EntropyMeasurement
    applied: tuple[Recommendation, ...]
    report: RoutingReport
    stages: tuple[PipelineStage, ...] = ()

    @property
    def delta(self) -> ScoreVector:
        return self.after.delta(self.before)
