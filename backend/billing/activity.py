from __future__ import annotations

from typing import Any, Dict, List, Optional

from .conf import billing_setting
from .models import Subscription, SubscriptionActivity

REDACT_KEYS = {"password", "token", "access", "refresh", "card", "cvv", "pin", "secret"}


def _sanitize(meta: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in (meta or {}).items():
        if str(k).lower() in REDACT_KEYS:
            out[k] = "***"
        elif isinstance(v, dict):
            out[k] = _sanitize(v)
        else:
            out[k] = v
    return out


def actor_id(actor) -> Optional[str]:
    """Accepts a user, a raw id, or None (system)."""
    if actor is None:
        return None
    if hasattr(actor, "is_authenticated"):
        return str(actor.pk) if actor.is_authenticated else None
    return str(actor)[:64]


def record(subscription: Subscription, activity_type: str, description: str, *,
           actor=None, metadata: Optional[Dict[str, Any]] = None) -> SubscriptionActivity:
    return SubscriptionActivity.objects.create(
        subscription=subscription,
        activity_type=activity_type,
        description=description,
        actor_user_id=actor_id(actor),
        metadata=_sanitize(metadata or {}),
    )


def timeline(subscription: Subscription, limit: Optional[int] = None) -> List[SubscriptionActivity]:
    """Newest first; `limit=None` uses the configured window, `limit=0` returns everything."""
    if limit is None:
        limit = billing_setting("ACTIVITY_TIMELINE_LIMIT")
    qs = SubscriptionActivity.objects.filter(subscription=subscription).order_by("-created_at", "-id")
    return list(qs[:limit]) if limit else list(qs)
