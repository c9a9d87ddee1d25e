"""
Business logic services.

Each service handles one stage of the pairing pipeline.
"""

from services.feature_service import build_features, build_feature_row
from services.role_confidence_service import (
    compute_role_confidence,
    cross_check_group_roles,
    apply_role_corrections,
)
from services.candidate_service import build_candidates, score_candidate
from services.pairing_service import PairingService, decide
from services.metrics_service import build_metrics, format_metrics_log
from services.tiebreak_service import TieBreakJudge, ClaudeTieBreakJudge
from services.classifier_service import ImageClassifier, ClaudeVisionClassifier
from services.insight_cache import InsightCache
from services.job_store_service import (
    JobStore,
    InMemoryJobStore,
    SupabaseJobStore,
    get_job_store,
)
from services.pairing_job_service import PairingJobService, get_pairing_job_service

__all__ = [
    "build_features",
    "build_feature_row",
    "compute_role_confidence",
    "cross_check_group_roles",
    "apply_role_corrections",
    "build_candidates",
    "score_candidate",
    "PairingService",
    "decide",
    "build_metrics",
    "format_metrics_log",
    "TieBreakJudge",
    "ClaudeTieBreakJudge",
    "ImageClassifier",
    "ClaudeVisionClassifier",
    "InsightCache",
    "JobStore",
    "InMemoryJobStore",
    "SupabaseJobStore",
    "get_job_store",
    "PairingJobService",
    "get_pairing_job_service",
]
