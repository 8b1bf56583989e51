"""
In-process feature flags.

Supports a global enabled switch, percentage rollouts and per-user overrides.
The queue layer only depends on the FeatureFlagProvider protocol, so another
flag backend can be plugged in without touching the factory.
"""

import hashlib
import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

from bountyqueue.config import Settings, get_settings

logger = logging.getLogger(__name__)


class FeatureFlagProvider(Protocol):
    """Anything that can answer whether a flag is on."""

    def is_enabled(self, flag_name: str, user_id: str | None = None) -> bool:
        ...


@dataclass
class FeatureFlag:
    """A registered flag."""

    name: str
    enabled: bool = False
    rollout_percentage: int = 0
    description: str = ""
    user_overrides: dict[str, bool] = field(default_factory=dict)


def _rollout_bucket(flag_name: str, user_id: str) -> int:
    """Stable bucket in [0, 100) for a flag/user pair."""
    digest = hashlib.sha256(f"{flag_name}:{user_id}".encode()).hexdigest()
    return int(digest, 16) % 100


class FeatureFlagService:
    """
    Feature flag registry.

    Evaluation order for is_enabled:
    1. Unknown flag: off
    2. User override, when a user id is given and has one
    3. Flag disabled: off
    4. Rollout 100: on; rollout 0: off
    5. Hash bucket of "{flag}:{user}" below the rollout percentage
    """

    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()
        self._lock = threading.Lock()
        self._flags: dict[str, FeatureFlag] = {}
        self.register_flag(
            settings.queue_feature_flag,
            enabled=settings.use_upstash_kafka,
            rollout_percentage=100 if settings.use_upstash_kafka else 0,
            description="Use Upstash Kafka for queue and job processing",
        )

    def is_enabled(self, flag_name: str, user_id: str | None = None) -> bool:
        """Check if a flag is on, optionally for a specific user."""
        flag = self._flags.get(flag_name)
        if flag is None:
            return False

        if user_id is not None and user_id in flag.user_overrides:
            return flag.user_overrides[user_id]

        if not flag.enabled:
            return False
        if flag.rollout_percentage >= 100:
            return True
        if flag.rollout_percentage <= 0:
            return False

        if user_id is None:
            return random.randint(1, 100) <= flag.rollout_percentage
        return _rollout_bucket(flag_name, user_id) < flag.rollout_percentage

    def register_flag(
        self,
        name: str,
        enabled: bool = False,
        rollout_percentage: int = 0,
        description: str = "",
    ) -> None:
        """Register a flag. Registering an existing name is a no-op."""
        with self._lock:
            if name in self._flags:
                return
            self._flags[name] = FeatureFlag(
                name=name,
                enabled=enabled,
                rollout_percentage=max(0, min(100, rollout_percentage)),
                description=description,
            )

    def set_enabled(self, flag_name: str, enabled: bool) -> bool:
        """Flip a flag's global switch. Returns False for unknown flags."""
        with self._lock:
            flag = self._flags.get(flag_name)
            if flag is None:
                return False
            flag.enabled = enabled
        logger.info("Feature flag updated", extra={"flag": flag_name, "enabled": enabled})
        return True

    def set_rollout_percentage(self, flag_name: str, percentage: int) -> bool:
        """Set the rollout percentage, clamped to 0-100."""
        with self._lock:
            flag = self._flags.get(flag_name)
            if flag is None:
                return False
            flag.rollout_percentage = max(0, min(100, percentage))
        return True

    def set_user_override(self, flag_name: str, user_id: str, enabled: bool) -> bool:
        with self._lock:
            flag = self._flags.get(flag_name)
            if flag is None:
                return False
            flag.user_overrides[user_id] = enabled
        return True

    def remove_user_override(self, flag_name: str, user_id: str) -> bool:
        with self._lock:
            flag = self._flags.get(flag_name)
            if flag is None:
                return False
            return flag.user_overrides.pop(user_id, None) is not None

    def get_all_flags(self) -> dict[str, dict[str, Any]]:
        """Summarize every registered flag."""
        return {
            name: {
                "enabled": flag.enabled,
                "rollout_percentage": flag.rollout_percentage,
                "description": flag.description,
                "override_count": len(flag.user_overrides),
            }
            for name, flag in self._flags.items()
        }


_feature_flags: FeatureFlagService | None = None


def get_feature_flags() -> FeatureFlagService:
    """Get the process-wide flag service."""
    global _feature_flags
    if _feature_flags is None:
        _feature_flags = FeatureFlagService()
    return _feature_flags


def reset_feature_flags() -> None:
    """Drop the process-wide flag service so the next call rebuilds it from settings."""
    global _feature_flags
    _feature_flags = None
