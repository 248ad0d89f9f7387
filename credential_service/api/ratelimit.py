"""Rate-limit plumbing for the public verification route.

Only verification is throttled: it is the one route anyone on the
internet can call, and each miss costs an index read, a ledger query and
a blob probe.  Issuance and revocation sit behind whatever gateway the
embedding system puts in front of them.

CALLER KEYS
-----------
We key by the most specific identity available:

  1. ``X-Verifier-Id`` header  -> ``verifier:<id>``  (an employer's
     integration, a registry crawler)
  2. otherwise the client IP   -> ``ip:<addr>``

Verifiers behind a shared NAT should send X-Verifier-Id; otherwise they
share one bucket.  A forged verifier id only buys the caller its own
bucket, which is no worse than the IP they already have.

RESPONSE HEADERS
----------------
X-RateLimit-Limit / -Remaining / -Reset go on every verification
response, not only 429s, so clients can slow down before they are
refused.  A 429 also carries Retry-After.
"""

from __future__ import annotations

import math
from datetime import datetime

from fastapi import Request

from credential_service.services.rate_limiter import RateLimitDecision

VERIFIER_HEADER = "x-verifier-id"
_MAX_VERIFIER_ID = 128


def caller_key(request: Request) -> str:
    verifier = request.headers.get(VERIFIER_HEADER, "").strip()
    if verifier:
        return f"verifier:{verifier[:_MAX_VERIFIER_ID]}"
    client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


def rate_limit_headers(decision: RateLimitDecision | None) -> dict[str, str]:
    if decision is None:
        return {}
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(decision.reset_at.timestamp())),
    }


def rejection_headers(decision: RateLimitDecision, now: datetime) -> dict[str, str]:
    headers = rate_limit_headers(decision)
    headers["X-RateLimit-Remaining"] = "0"
    # Whole seconds, rounded up, and never 0.
    headers["Retry-After"] = str(max(1, math.ceil(decision.retry_after(now))))
    return headers
