"""FAQ synthesis, duplicate detection and review."""

from knowledge_pipeline.faqs.models import (
    BatchSynthesisResult,
    ConfidenceFactors,
    DuplicateResolution,
    DuplicateReviewStatus,
    FAQCandidate,
    FAQStatus,
    ReviewDecision,
    SynthesisOptions,
    SynthesisResult,
)
from knowledge_pipeline.faqs.review import FAQReviewService
from knowledge_pipeline.faqs.similarity import ChromaSimilarityIndex, SimilarityIndex, SimilarityMatch
from knowledge_pipeline.faqs.synthesizer import FAQSynthesizer

__all__ = [
    "FAQSynthesizer",
    "FAQReviewService",
    "ChromaSimilarityIndex",
    "SimilarityIndex",
    "SimilarityMatch",
    "BatchSynthesisResult",
    "ConfidenceFactors",
    "DuplicateResolution",
    "DuplicateReviewStatus",
    "FAQCandidate",
    "FAQStatus",
    "ReviewDecision",
    "SynthesisOptions",
    "SynthesisResult",
]
