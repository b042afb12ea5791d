"""Dead-consumer cleanup for the worker consumer group.

Runs as its own process (``python -m omniworker.cleanup run``), separate
from the workers, on an hourly schedule by default.
"""

from __future__ import annotations

from omniworker.cleanup.config import ConfigCleanup, EnumMembershipSource
from omniworker.cleanup.dead_consumer_cleaner import (
    DeadConsumerCleaner,
    EnumSkipReason,
    ModelCleanupCandidate,
    ModelCleanupReport,
)
from omniworker.cleanup.membership import (
    KubernetesMembershipSource,
    MembershipError,
    ProtocolMembershipSource,
    StaticMembershipSource,
    build_membership_source,
)

__all__: list[str] = [
    "ConfigCleanup",
    "DeadConsumerCleaner",
    "EnumMembershipSource",
    "EnumSkipReason",
    "KubernetesMembershipSource",
    "MembershipError",
    "ModelCleanupCandidate",
    "ModelCleanupReport",
    "ProtocolMembershipSource",
    "StaticMembershipSource",
    "build_membership_source",
]
