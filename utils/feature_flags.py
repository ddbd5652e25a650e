"""
Environment-based feature flags for liability aggregation.

Flags decide which data sources are registered with the provider manager at
startup. Manual entry is always on and has no flag.
"""

import os
import logging
from typing import Dict, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class FeatureFlagKey(Enum):
    PLAID_LIABILITY_SYNC = "plaid_liability_sync"
    METHOD_LIABILITY_SYNC = "method_liability_sync"
    DEMO_DATA = "demo_data"


class FeatureFlags:
    """
    Feature flag management system.

    Flags are read from the environment once; call reload_flags() to pick up
    changes at runtime.
    """

    def __init__(self):
        self.flags = self._load_flags()
        logger.info(f"Feature flags initialized: {self.flags}")

    def _load_flags(self) -> Dict[str, bool]:
        """Load feature flags from environment variables or defaults."""
        return {
            FeatureFlagKey.PLAID_LIABILITY_SYNC.value: self._parse_bool_env(
                'FF_PLAID_LIABILITY_SYNC',
                default='true'
            ),
            FeatureFlagKey.METHOD_LIABILITY_SYNC.value: self._parse_bool_env(
                'FF_METHOD_LIABILITY_SYNC',
                default='true'
            ),
            FeatureFlagKey.DEMO_DATA.value: self._parse_bool_env(
                'FF_DEMO_DATA',
                default='true'
            ),
        }

    def _parse_bool_env(self, env_var: str, default: str) -> bool:
        value = os.getenv(env_var, default).lower().strip()
        return value in ('true', '1', 'yes', 'on', 'enabled')

    def is_enabled(self, flag_key: str, user_id: Optional[str] = None) -> bool:
        """
        Check if a feature flag is enabled.

        Args:
            flag_key: Feature flag key (string)
            user_id: Reserved for per-user overrides

        Returns:
            True if flag is enabled, False otherwise (including unknown flags)
        """
        if flag_key not in self.flags:
            logger.warning(f"Unknown feature flag requested: {flag_key}")
            return False
        return self.flags[flag_key]

    def is_enabled_enum(self, flag_key: FeatureFlagKey, user_id: Optional[str] = None) -> bool:
        return self.is_enabled(flag_key.value, user_id)

    def get_all_flags(self, user_id: Optional[str] = None) -> Dict[str, bool]:
        return {key: self.is_enabled(key, user_id) for key in self.flags.keys()}

    def reload_flags(self) -> None:
        """Reload feature flags from environment (useful for runtime updates)."""
        old_flags = self.flags.copy()
        self.flags = self._load_flags()

        for key, new_value in self.flags.items():
            old_value = old_flags.get(key, False)
            if old_value != new_value:
                logger.info(f"Feature flag changed: {key} {old_value} -> {new_value}")


# Global feature flags instance
feature_flags = FeatureFlags()


def get_feature_flags() -> FeatureFlags:
    """Get the global feature flags instance."""
    return feature_flags
