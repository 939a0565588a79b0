from __future__ import annotations

import hashlib
import json
from typing import Any


def _stable_value(value: Any) -> str:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return str(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def make_stripe_idempotency_key(
    purpose: str,
    *,
    project_public_id: str | None = None,
    amount_cents: int | None = None,
    currency: str | None = None,
    extra: dict | None = None,
) -> str:
    """Deterministic idempotency key for a Stripe mutation.

    Retrying the same logical operation yields the same key, so Stripe returns
    the original object instead of creating a second checkout session.
    Format: ``<purpose prefix>-<32 hex chars>``, well under Stripe's 255 limit.
    """
    parts: list[str] = [purpose]
    if project_public_id is not None:
        parts.append(f"p:{project_public_id}")
    if amount_cents is not None:
        parts.append(f"a:{amount_cents}")
    if currency is not None:
        parts.append(f"c:{currency.lower()}")
    for key in sorted(extra or {}):
        parts.append(f"x:{key}:{_stable_value(extra[key])}")

    digest = hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]
    prefix = purpose[:8].replace("_", "-").rstrip("-")
    return f"{prefix}-{digest}"
