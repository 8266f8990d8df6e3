from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from .models import Credential


@dataclass
class Selection:
    """Attempt order for one request."""
    ordered: List[Credential]
    any_ready: bool
    retry_after_ms: float
    now: float

    def describe(self) -> List[Dict[str, Any]]:
        """Per-key view for diagnostics; never includes secrets."""
        keys = []
        for credential in self.ordered:
            error_score, cooldown_until = credential.snapshot()
            keys.append({
                "key": credential.identifier,
                "error_score": error_score,
                "cooldown_remaining_ms": max(0, int(cooldown_until - self.now)),
            })
        return keys


# ===========================
# Key Selector
# ===========================

class KeySelector:
    """Orders credentials ready-first, then by ascending error score.

    Ties keep insertion order since ``sorted`` is stable.
    """

    def select(self, credentials: Sequence[Credential], now: float) -> Selection:
        snapshots = [(credential, credential.snapshot()) for credential in credentials]

        ordered = sorted(
            snapshots,
            key=lambda item: (item[1][1] > now, item[1][0]),
        )
        any_ready = any(cooldown_until <= now for _, (_, cooldown_until) in snapshots)

        retry_after_ms = 0.0
        if snapshots and not any_ready:
            retry_after_ms = min(cooldown_until - now for _, (_, cooldown_until) in snapshots)

        return Selection(
            ordered=[credential for credential, _ in ordered],
            any_ready=any_ready,
            retry_after_ms=retry_after_ms,
            now=now,
        )
