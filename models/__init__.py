"""
Pydantic models for validation and serialization.
"""

from models.base import BaseSchema
from models.image_insight import ImageRole, ImageInsight, FeatureRow
from models.pairing import (
    RoleCorrection,
    GroupRoleChange,
    GroupRoleCorrection,
    BrandFlag,
    Candidate,
    DecisionOutcome,
    Decision,
    PairSource,
    Pair,
    Singleton,
    GenericBackFlag,
    MetricsTotals,
    BrandStats,
    SloStatus,
    PairingMetrics,
    PairingResult,
)
from models.pairing_job import (
    JobStatus,
    UploadMethod,
    PairingJobCreate,
    PairingJob,
    PairingJobResponse,
    ChunkRange,
    ChunkOutcome,
    InvocationResult,
)

__all__ = [
    # Base
    "BaseSchema",

    # Images
    "ImageRole",
    "ImageInsight",
    "FeatureRow",

    # Pairing
    "RoleCorrection",
    "GroupRoleChange",
    "GroupRoleCorrection",
    "BrandFlag",
    "Candidate",
    "DecisionOutcome",
    "Decision",
    "PairSource",
    "Pair",
    "Singleton",
    "GenericBackFlag",
    "MetricsTotals",
    "BrandStats",
    "SloStatus",
    "PairingMetrics",
    "PairingResult",

    # Jobs
    "JobStatus",
    "UploadMethod",
    "PairingJobCreate",
    "PairingJob",
    "PairingJobResponse",
    "ChunkRange",
    "ChunkOutcome",
    "InvocationResult",
]
