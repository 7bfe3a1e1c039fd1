"""
Settings and configuration for the content-addressable Azure store.

Centralizes configuration values and provides validation with fail-fast behavior.
Settings are explicit values threaded through store constructors; nothing here
is process-wide mutable state, so tests can run several policies side by side.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Optional

__all__ = ["Settings", "create_settings_from_env", "DUAL_SEPARATOR"]

# Separates the old and new connection strings of a dual (migration) configuration.
DUAL_SEPARATOR = "||"


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for stores and factories.

    Backend Settings:
        connection_string: Azure connection string, or "old||new" for a dual store
        read_only: Open stores read-only (no staging/archive containers needed)
        container_prefix: Prefix for container names (used by tests)

    Retry Settings:
        retry_max_total_s: Total time budget for retrying one remote call
        retry_attempt_timeout_s: Time after which a single attempt is abandoned
        retry_delay_s: Fixed delay between attempts
        retry_on_403: Retry "AuthenticationFailed" 403 responses (Azure glitch)
        retry_on_no_such_address: Retry DNS resolution failures

    Background Settings:
        copy_poll_initial_s: First delay when polling a pending server-side copy
        copy_poll_max_s: Maximum delay between copy status polls
        staging_delete_delay_s: Grace delay before deleting a written staging blob
        uploaded_delete_delay_s: Grace delay before deleting an externally uploaded blob
        max_background_copies: Bound on in-flight copy-forward tasks
    """
    # Backend settings
    connection_string: Optional[str] = None
    read_only: bool = False
    container_prefix: Optional[str] = None

    # Retry settings
    retry_max_total_s: float = 600.0
    retry_attempt_timeout_s: float = 30.0
    retry_delay_s: float = 2.0
    retry_on_403: bool = False
    retry_on_no_such_address: bool = False

    # Background settings
    copy_poll_initial_s: float = 0.25
    copy_poll_max_s: float = 120.0
    staging_delete_delay_s: float = 1.0
    uploaded_delete_delay_s: float = 600.0
    max_background_copies: int = 64

    def __post_init__(self):
        """Validate settings on construction."""
        if self.connection_string is not None:
            parts = self.connection_string.split(DUAL_SEPARATOR)
            if len(parts) > 2:
                raise ValueError(
                    f"connection_string holds {len(parts)} configurations, at most 2 are supported"
                )
            if any(not part.strip() for part in parts):
                raise ValueError("connection_string contains an empty configuration")

        # Container names must be lowercase letters, digits and dashes
        if self.container_prefix is not None:
            if not re.match(r"^[a-z0-9][a-z0-9-]*$", self.container_prefix):
                raise ValueError(f"Invalid container_prefix format: {self.container_prefix}")

        if self.retry_max_total_s <= 0:
            raise ValueError(f"retry_max_total_s must be positive, got {self.retry_max_total_s}")

        if self.retry_attempt_timeout_s <= 0:
            raise ValueError(f"retry_attempt_timeout_s must be positive, got {self.retry_attempt_timeout_s}")

        if self.retry_delay_s < 0:
            raise ValueError(f"retry_delay_s must be non-negative, got {self.retry_delay_s}")

        if self.copy_poll_initial_s <= 0:
            raise ValueError(f"copy_poll_initial_s must be positive, got {self.copy_poll_initial_s}")

        if self.copy_poll_max_s < self.copy_poll_initial_s:
            raise ValueError("copy_poll_max_s must be at least copy_poll_initial_s")

        if self.staging_delete_delay_s < 0 or self.uploaded_delete_delay_s < 0:
            raise ValueError("staging deletion delays must be non-negative")

        if self.max_background_copies < 1:
            raise ValueError(f"max_background_copies must be at least 1, got {self.max_background_copies}")

    @property
    def is_dual(self) -> bool:
        """True when the connection string names both an old and a new account."""
        return self.connection_string is not None and DUAL_SEPARATOR in self.connection_string


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - CONTENTADDR_CONNECTION_STRING (optional, "old||new" for dual stores)
        - CONTENTADDR_READ_ONLY (default: false)
        - CONTENTADDR_CONTAINER_PREFIX (optional)
        - CONTENTADDR_RETRY_MAX_TOTAL (default: 600.0)
        - CONTENTADDR_RETRY_ATTEMPT_TIMEOUT (default: 30.0)
        - CONTENTADDR_RETRY_DELAY (default: 2.0)
        - CONTENTADDR_RETRY_ON_403 (default: false)
        - CONTENTADDR_RETRY_ON_NO_SUCH_ADDRESS (default: false)
        - CONTENTADDR_MAX_BACKGROUND_COPIES (default: 64)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    return Settings(
        connection_string=os.getenv("CONTENTADDR_CONNECTION_STRING") or None,
        read_only=str_to_bool(os.getenv("CONTENTADDR_READ_ONLY", "false")),
        container_prefix=os.getenv("CONTENTADDR_CONTAINER_PREFIX") or None,
        retry_max_total_s=get_float("CONTENTADDR_RETRY_MAX_TOTAL", 600.0),
        retry_attempt_timeout_s=get_float("CONTENTADDR_RETRY_ATTEMPT_TIMEOUT", 30.0),
        retry_delay_s=get_float("CONTENTADDR_RETRY_DELAY", 2.0),
        retry_on_403=str_to_bool(os.getenv("CONTENTADDR_RETRY_ON_403", "false")),
        retry_on_no_such_address=str_to_bool(os.getenv("CONTENTADDR_RETRY_ON_NO_SUCH_ADDRESS", "false")),
        max_background_copies=get_int("CONTENTADDR_MAX_BACKGROUND_COPIES", 64),
    )
