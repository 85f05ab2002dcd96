"""Prometheus metrics definitions for sigv4auth.

All custom metrics use the ``sigv4auth_`` prefix. HTTP-level metrics
(request count, duration, sizes) come from
``prometheus-fastapi-instrumentator`` when the hosting app enables it.

Metrics are opt-in: until ``init_metrics()`` runs, the module-level
references stay ``None`` and ``observe_verification`` does nothing, so the
verifier can be embedded without touching the global registry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram

if TYPE_CHECKING:
    from sigv4auth.models import VerificationOutcome

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Verification counter  (labels: outcome, code)
# ---------------------------------------------------------------------------
verifications_total: Counter | None = None

# ---------------------------------------------------------------------------
# Verification latency
# ---------------------------------------------------------------------------
verification_seconds: Histogram | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; only the first call registers collectors.
    """
    global _initialized, verifications_total, verification_seconds

    if _initialized:
        return

    verifications_total = Counter(
        "sigv4auth_verifications_total",
        "Total SigV4 verifications by outcome and internal error code",
        ["outcome", "code"],
    )

    verification_seconds = Histogram(
        "sigv4auth_verification_seconds",
        "Time spent verifying SigV4 signatures, including key lookup",
    )

    _initialized = True


def observe_verification(outcome: VerificationOutcome, duration: float) -> None:
    """Record one verification outcome. No-op until init_metrics() has run."""
    if verifications_total is None or verification_seconds is None:
        return

    if outcome.authenticated:
        label, code = "authenticated", ""
    elif hasattr(outcome, "reason"):
        label, code = "rejected", outcome.reason.code
    else:
        label, code = "error", outcome.cause.code

    verifications_total.labels(outcome=label, code=code).inc()
    verification_seconds.observe(duration)
