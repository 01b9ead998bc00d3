"""
Knowledge Hub - Admission Gate

Decides whether a raw candidate becomes a ContentRecord, and in what initial
condition. The gate is an ordered pipeline; each step may short-circuit the
ones after it:

1. Schema validation   - every violated field is reported, before any scoring
2. Duplicate check     - similarity against existing Pending/Approved content
3. Quality scoring     - score 0-100 plus issues; low scores flag the record
4. Auto-tagging        - best effort, only when the caller supplied no tags

Steps return tagged results (ACCEPTED / FLAGGED / REJECTED). `evaluate()` never
raises for expected outcomes; `admit()` is the caller-facing contract and
raises ValidationError / DuplicateError for rejections. Failures inside the
duplicate detector or quality scorer surface as AdmissionFault.

The gate has no side effects beyond building the record: persistence and
auditing happen when the record is handed to the governance workflow.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .content_models import (
    AttachmentRef, Category, ContentRecord, ContentStatus, DUPLICATE_MARKER, Origin,
    RawCandidate, Region,
)
from .content_store import ContentStore
from .errors import AdmissionFault, DuplicateError, KnowledgeHubError, ValidationError
from .hub_config import GateConfig, get_gate_config

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

class AdmissionOutcome(str, Enum):
    ACCEPTED = "accepted"
    FLAGGED = "flagged"     # accepted, but routed to the quality-review lane
    REJECTED = "rejected"


@dataclass
class AdmissionOptions:
    """Caller options for one admission."""
    skip_duplicates: bool = True
    origin: str = Origin.DIRECT.value
    author_id: Optional[str] = None   # used when the candidate carries no author


@dataclass
class SimilarityReport:
    score: float = 0.0
    matches: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class QualityReport:
    score: int = 100
    issues: List[str] = field(default_factory=list)


@dataclass
class AdmissionResult:
    outcome: AdmissionOutcome
    record: Optional[ContentRecord] = None
    reasons: List[str] = field(default_factory=list)
    error: Optional[KnowledgeHubError] = None

    @property
    def accepted(self) -> bool:
        return self.outcome != AdmissionOutcome.REJECTED

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"outcome": self.outcome.value, "reasons": list(self.reasons)}
        if self.record is not None:
            result["record"] = self.record.to_dict()
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


# =============================================================================
# TEXT HELPERS
# =============================================================================

_WORD_RE = re.compile(r"\w+", re.UNICODE)

STOP_WORDS = frozenset({
    "the", "a", "an", "in", "on", "at", "to", "for", "of", "and", "or", "is",
    "are", "was", "were", "be", "been", "being", "this", "that", "with", "from",
    "into", "about", "these", "those", "their", "there", "which", "will", "have",
})

CATEGORY_KEYWORDS: Dict[str, tuple] = {
    Category.STRATEGY.value: (
        "strateg", "roadmap", "vision", "goal", "plan", "competitive", "growth", "initiative",
    ),
    Category.TECHNICAL.value: (
        "technic", "technolog", "software", "architect", "system", "code", "engineer",
        "cloud", "data", "api", "infrastructure", "security", "platform",
    ),
    Category.MARKET_RESEARCH.value: (
        "market", "research", "customer", "survey", "competitor", "trend", "segment",
        "consumer", "industry", "analysis",
    ),
    Category.OPERATIONS.value: (
        "operation", "process", "workflow", "supply", "logistic", "efficien", "delivery",
        "procure", "vendor", "inventory",
    ),
    Category.FINANCE.value: (
        "financ", "budget", "cost", "revenue", "profit", "invest", "account", "forecast",
        "pricing", "margin",
    ),
}


def tokenize(text: str) -> List[str]:
    return _WORD_RE.findall((text or "").lower())


def jaccard_similarity(left: str, right: str) -> float:
    """Word-set Jaccard similarity in [0.0, 1.0]."""
    left_words = set(tokenize(left))
    right_words = set(tokenize(right))
    union = left_words | right_words
    if not union:
        return 0.0
    return len(left_words & right_words) / len(union)


def validate_candidate(candidate: RawCandidate) -> Dict[str, str]:
    """Return {field: reason} for every schema violation (empty if valid)."""
    errors: Dict[str, str] = {}

    if not isinstance(candidate.title, str) or not candidate.title.strip():
        errors["title"] = "Title is missing"
    if not isinstance(candidate.description, str) or not candidate.description.strip():
        errors["description"] = "Description is missing"

    categories = [c.value for c in Category]
    if not candidate.category:
        errors["category"] = "Category is missing"
    elif candidate.category not in categories:
        errors["category"] = f"Unknown category '{candidate.category}'. Valid: {categories}"

    if candidate.region is not None and candidate.region not in [r.value for r in Region]:
        errors["region"] = f"Unknown region '{candidate.region}'"

    if not isinstance(candidate.tags, list) or not all(isinstance(t, str) for t in candidate.tags):
        errors["tags"] = "Tags must be a list of strings"

    if not isinstance(candidate.attachments, list) or not all(
        isinstance(a, AttachmentRef) for a in candidate.attachments
    ):
        errors["attachments"] = "Attachments must be a list of objects"

    return errors


# =============================================================================
# PLUGGABLE MODELS
# =============================================================================

class DuplicateDetector(ABC):
    """
    Similarity model contract.

    Returns the highest similarity in [0.0, 1.0] against existing accepted
    content, plus the nearest matches as {"id", "title", "score"} dicts,
    best first.
    """

    @abstractmethod
    async def check(self, text: str, exclude_id: Optional[str] = None) -> SimilarityReport:
        ...


class QualityScorer(ABC):
    """Quality model contract: score in [0, 100] plus human-readable issues."""

    @abstractmethod
    async def score(self, candidate: RawCandidate) -> QualityReport:
        ...


class JaccardDuplicateDetector(DuplicateDetector):
    """
    Compares descriptions by word-set Jaccard similarity against the newest
    Pending and Approved records in the store.
    """

    CORPUS_STATUSES = (ContentStatus.PENDING.value, ContentStatus.APPROVED.value)

    def __init__(self, store: ContentStore, match_floor: float = 0.30, corpus_limit: int = 500):
        self.store = store
        self.match_floor = match_floor
        self.corpus_limit = corpus_limit

    async def check(self, text: str, exclude_id: Optional[str] = None) -> SimilarityReport:
        corpus = await self.store.corpus(self.CORPUS_STATUSES, self.corpus_limit, exclude_id)

        best = 0.0
        matches = []
        for item in corpus:
            score = jaccard_similarity(text, item.get("description", ""))
            best = max(best, score)
            if score >= self.match_floor:
                matches.append({"id": item["id"], "title": item.get("title"), "score": round(score, 4)})

        matches.sort(key=lambda m: m["score"], reverse=True)
        return SimilarityReport(score=round(best, 4), matches=matches)


class HeuristicQualityScorer(QualityScorer):
    """Rule-based quality model. Each rule deducts a fixed penalty."""

    SHORT_DESCRIPTION = ("Description too short", 35)
    SHORT_TITLE = ("Title too short", 10)
    WEAK_CATEGORY = ("Weak category match", 15)
    REPETITION = ("Suspicious repetition", 30)
    MISSING_REGION = ("Missing metadata: region", 5)

    def __init__(self, min_description_length: int = 50, min_title_length: int = 10):
        self.min_description_length = min_description_length
        self.min_title_length = min_title_length

    async def score(self, candidate: RawCandidate) -> QualityReport:
        issues: List[str] = []
        score = 100

        def deduct(rule):
            nonlocal score
            issue, penalty = rule
            issues.append(issue)
            score -= penalty

        description = candidate.description or ""
        words = tokenize(f"{candidate.title} {description}")

        if len(description) < self.min_description_length:
            deduct(self.SHORT_DESCRIPTION)
        if len(candidate.title or "") < self.min_title_length:
            deduct(self.SHORT_TITLE)

        keywords = CATEGORY_KEYWORDS.get(candidate.category, ())
        if not any(word.startswith(k) for word in words for k in keywords):
            deduct(self.WEAK_CATEGORY)

        description_words = tokenize(description)
        if len(description_words) >= 10 and len(set(description_words)) / len(description_words) < 0.5:
            deduct(self.REPETITION)

        if not candidate.region:
            deduct(self.MISSING_REGION)

        return QualityReport(score=max(0, min(100, score)), issues=issues)


class KeywordTagger:
    """Derives tags from text: distinct non-stop words longer than 3 characters."""

    def __init__(self, max_tags: int = 10):
        self.max_tags = max_tags

    def extract(self, text: str) -> List[str]:
        tags: List[str] = []
        for word in tokenize(text):
            if len(word) > 3 and word not in STOP_WORDS and not word.isdigit() and word not in tags:
                tags.append(word)
                if len(tags) >= self.max_tags:
                    break
        return tags


# =============================================================================
# GATE
# =============================================================================

@dataclass
class _Evaluation:
    """Intermediate state threaded through the pipeline steps."""
    candidate: RawCandidate
    options: AdmissionOptions
    similarity: SimilarityReport = field(default_factory=SimilarityReport)
    quality: QualityReport = field(default_factory=QualityReport)
    tags: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    flag_reasons: List[str] = field(default_factory=list)


class AdmissionGate:
    """
    Admission pipeline for one candidate at a time.

    Usage:
        gate = AdmissionGate(JaccardDuplicateDetector(store), HeuristicQualityScorer())
        result = await gate.admit(candidate, AdmissionOptions(skip_duplicates=True))
    """

    def __init__(
        self,
        duplicate_detector: DuplicateDetector,
        quality_scorer: QualityScorer,
        tagger: Optional[KeywordTagger] = None,
        config: Optional[GateConfig] = None
    ):
        self.config = config or get_gate_config()
        self.duplicate_detector = duplicate_detector
        self.quality_scorer = quality_scorer
        self.tagger = tagger or KeywordTagger(self.config.max_auto_tags)

        self._steps: List[Callable] = [
            self._check_schema,
            self._check_duplicates,
            self._score_quality,
            self._derive_tags,
        ]

    @classmethod
    def with_store(cls, store: ContentStore, config: Optional[GateConfig] = None) -> "AdmissionGate":
        """Build a gate with the default similarity, quality and tagging models."""
        config = config or get_gate_config()
        return cls(
            JaccardDuplicateDetector(store, config.match_floor, config.corpus_limit),
            HeuristicQualityScorer(config.min_description_length),
            KeywordTagger(config.max_auto_tags),
            config,
        )

    def validate(self, candidate: RawCandidate) -> None:
        """Schema check only. Raises ValidationError listing every violation."""
        errors = validate_candidate(candidate)
        if errors:
            raise ValidationError(errors)

    async def admit(
        self,
        candidate: RawCandidate,
        options: Optional[AdmissionOptions] = None
    ) -> AdmissionResult:
        """
        Admit a candidate.

        Returns an ACCEPTED or FLAGGED result carrying a new Pending record.

        Raises:
            ValidationError: malformed candidate
            DuplicateError: similarity at or above threshold with skip_duplicates
            AdmissionFault: the similarity or quality model failed
        """
        result = await self.evaluate(candidate, options)
        if result.outcome == AdmissionOutcome.REJECTED:
            raise result.error
        return result

    async def evaluate(
        self,
        candidate: RawCandidate,
        options: Optional[AdmissionOptions] = None
    ) -> AdmissionResult:
        """Run the pipeline and return a tagged result. Raises only AdmissionFault."""
        state = _Evaluation(candidate=candidate, options=options or AdmissionOptions())

        for step in self._steps:
            rejection = await step(state)
            if rejection is not None:
                return rejection

        record = self._build_record(state)
        outcome = AdmissionOutcome.FLAGGED if record.flagged else AdmissionOutcome.ACCEPTED
        return AdmissionResult(outcome=outcome, record=record, reasons=list(state.flag_reasons))

    async def reevaluate(self, record: ContentRecord) -> Dict[str, Any]:
        """
        Recompute duplicate and quality scores for an existing record, ignoring
        the record itself in the corpus. Returns the fields to update.
        """
        candidate = RawCandidate(
            title=record.title,
            description=record.description,
            category=record.category,
            region=record.region,
            tags=sorted(record.tags),
        )
        similarity = await self._run_model("duplicate detector", self.duplicate_detector.check(
            record.description, exclude_id=record.id
        ))
        quality = await self._run_model("quality scorer", self.quality_scorer.score(candidate))

        issues = list(quality.issues)
        flagged = quality.score < self.config.quality_floor
        if similarity.score >= self.config.duplicate_threshold:
            issues.append(DUPLICATE_MARKER)
            flagged = True

        return {
            "quality_score": quality.score,
            "quality_issues": issues,
            "duplicate_score": similarity.score,
            "similar_items": [m["id"] for m in similarity.matches],
            "flagged": flagged,
        }

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    async def _check_schema(self, state: _Evaluation) -> Optional[AdmissionResult]:
        errors = validate_candidate(state.candidate)
        if errors:
            return AdmissionResult(
                outcome=AdmissionOutcome.REJECTED,
                reasons=[f"{k}: {v}" for k, v in errors.items()],
                error=ValidationError(errors),
            )
        return None

    async def _check_duplicates(self, state: _Evaluation) -> Optional[AdmissionResult]:
        report = await self._run_model(
            "duplicate detector", self.duplicate_detector.check(state.candidate.description)
        )
        state.similarity = report

        if report.score < self.config.duplicate_threshold:
            return None

        if state.options.skip_duplicates:
            error = DuplicateError(report.score, report.matches[:3])
            return AdmissionResult(
                outcome=AdmissionOutcome.REJECTED,
                reasons=[error.message],
                error=error,
            )

        state.issues.append(DUPLICATE_MARKER)
        state.flag_reasons.append(f"Near-duplicate admitted (similarity {report.score:.2f})")
        return None

    async def _score_quality(self, state: _Evaluation) -> Optional[AdmissionResult]:
        report = await self._run_model("quality scorer", self.quality_scorer.score(state.candidate))
        state.quality = report
        state.issues = list(report.issues) + state.issues
        if report.score < self.config.quality_floor:
            state.flag_reasons.append(
                f"Quality score {report.score} below floor {self.config.quality_floor}"
            )
        return None

    async def _derive_tags(self, state: _Evaluation) -> Optional[AdmissionResult]:
        if state.candidate.tags:
            state.tags = list(state.candidate.tags)
            return None
        try:
            state.tags = self.tagger.extract(f"{state.candidate.title} {state.candidate.description}")
        except Exception as e:
            logger.warning("Auto-tagging failed for %s: %s", state.candidate.identity(), e)
            state.tags = []
        return None

    # ------------------------------------------------------------------

    async def _run_model(self, name: str, awaitable):
        try:
            return await awaitable
        except KnowledgeHubError:
            raise
        except Exception as e:
            logger.error("Admission %s failed: %s", name, e)
            raise AdmissionFault(f"Admission {name} failed: {e}") from e

    def _build_record(self, state: _Evaluation) -> ContentRecord:
        candidate = state.candidate
        return ContentRecord(
            title=candidate.title.strip(),
            description=candidate.description.strip(),
            category=candidate.category,
            region=candidate.region,
            author_id=candidate.author_id or state.options.author_id,
            tags=set(state.tags),
            attachments=list(candidate.attachments),
            origin=state.options.origin,
            quality_score=state.quality.score,
            quality_issues=state.issues,
            duplicate_score=state.similarity.score,
            similar_items=[m["id"] for m in state.similarity.matches[:3]],
            status=ContentStatus.PENDING.value,
            flagged=bool(state.flag_reasons),
            source_id=candidate.source_id,
        )
