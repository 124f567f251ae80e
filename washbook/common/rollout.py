"""Percentage rollout for the card-on-file booking path.

Bucketing is deterministic per (salt, user), so a user stays on the same side
of the rollout as the percentage grows.
"""

import hashlib
from dataclasses import dataclass, field

from washbook.common.config import CommonSettings


def bucket(user_id: str, salt: str) -> int:
    """Stable bucket in [0, 100) from the first 32 bits of md5(salt:user_id)."""

    digest = hashlib.md5(f"{salt}:{user_id}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


def parse_user_list(raw: str) -> frozenset[str]:
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class RolloutPolicy:
    enabled: bool
    percentage: int
    test_users: frozenset[str] = field(default_factory=frozenset)
    salt: str = "payment-authorization"

    @classmethod
    def from_settings(cls, config: CommonSettings) -> "RolloutPolicy":
        return cls(
            enabled=config.payment_auth_enabled,
            percentage=config.payment_auth_percentage,
            test_users=parse_user_list(config.payment_auth_test_users),
            salt=config.payment_auth_salt,
        )

    def is_enabled_for(self, user_id: str | None) -> bool:
        """Test users always pass; otherwise the user's bucket must fall under the percentage."""

        if not self.enabled:
            return False
        if user_id and user_id in self.test_users:
            return True
        if self.percentage >= 100:
            return True
        if self.percentage <= 0 or not user_id:
            return False
        return bucket(user_id, self.salt) < self.percentage
