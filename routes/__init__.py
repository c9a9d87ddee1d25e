"""
API route modules.

Each module defines routes for one domain area.
"""

from routes.pairing_jobs import router as pairing_jobs_router

__all__ = [
    "pairing_jobs_router",
]
