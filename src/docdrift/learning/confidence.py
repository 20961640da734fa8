"""Time decay for verification confidence."""
from __future__ import annotations
import math
from datetime import datetime, timezone
from typing import Optional

from docdrift.models import VerificationResult


def effective_confidence(
    result: VerificationResult,
    half_life_days: int = 180,
    now: Optional[datetime] = None
) -> float:
    """Confidence halved every ``half_life_days`` since the result was written.

    Args:
        result: Stored verification result
        half_life_days: Days for confidence to halve
        now: Reference time (defaults to current UTC time)

    Returns:
        Decayed confidence, never below 0
    """
    now = now or datetime.now(timezone.utc)
    created_at = result.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    days = max((now - created_at).total_seconds() / 86400.0, 0.0)
    decay = math.exp(-days * math.log(2) / half_life_days)
    return max(0.0, result.confidence * decay)
