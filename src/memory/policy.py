from __future__ import annotations

import logging
from typing import Any, Optional

from .models import DEFAULT_CONTEXT_POLICY, ContextPolicy

logger = logging.getLogger(__name__)

POLICY_STATE_KEY = "context_policy"


def resolve_context_policy(
    thread_state: Optional[dict[str, Any]],
    default: ContextPolicy = DEFAULT_CONTEXT_POLICY,
    overrides: Optional[dict[str, Any]] = None,
) -> ContextPolicy:
    """Per-conversation policy stored in thread state, falling back to ``default``.

    ``overrides`` are applied last, for one-off requests.
    """
    policy = default
    stored = (thread_state or {}).get(POLICY_STATE_KEY)
    if isinstance(stored, dict):
        policy = policy.with_overrides(stored)
    elif stored is not None:
        logger.warning("Ignoring malformed context policy in thread state: %r", stored)
    if overrides:
        policy = policy.with_overrides(overrides)
    return policy
