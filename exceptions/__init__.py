"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ExternalServiceError,
    DatabaseError,

    # Pairing jobs
    PairingJobNotFoundError,
    InvalidJobTransitionError,
    JobStoreError,
    ChunkProcessingError,

    # Collaborators
    ImageFetchError,
    ClassificationError,
    TieBreakError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ExternalServiceError",
    "DatabaseError",

    # Pairing jobs
    "PairingJobNotFoundError",
    "InvalidJobTransitionError",
    "JobStoreError",
    "ChunkProcessingError",

    # Collaborators
    "ImageFetchError",
    "ClassificationError",
    "TieBreakError",
]
