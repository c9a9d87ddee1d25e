"""
Configuration module.

Exports:
    settings: Application settings instance
    get_settings: Function to get settings (for dependency injection)
    PairingConfig: Validated pairing thresholds
    get_pairing_config: Build PairingConfig from settings
    get_supabase_client: Supabase client for the job store
    check_connection: Health check function
"""

from config.settings import settings, get_settings, Settings
from config.pairing import (
    PairingConfig,
    ScoreWeights,
    RetryPolicy,
    ENGINE_VERSION,
    get_pairing_config,
)
from config.database import (
    get_supabase_client,
    check_connection,
    reset_connection,
)

__all__ = [
    # Settings
    "settings",
    "get_settings",
    "Settings",

    # Pairing
    "PairingConfig",
    "ScoreWeights",
    "RetryPolicy",
    "ENGINE_VERSION",
    "get_pairing_config",

    # Database
    "get_supabase_client",
    "check_connection",
    "reset_connection",
]
