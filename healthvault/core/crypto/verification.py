"""
Ledger event-chain verification.

Works on plain event dicts (``LedgerEvent.model_dump(mode="json")``) so the
same check runs against the in-memory ledger and against events fetched
from a remote node.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from healthvault.core.crypto.hash_chain import GENESIS_HASH, compute_event_hash

CHAIN_FIELDS = frozenset({"event_hash", "prev_event_hash", "chain_sequence"})


@dataclass
class ChainVerificationResult:
    """Outcome of a chain walk.

    Attributes
    ----------
    is_valid:
        ``True`` when every event links to its predecessor and hashes correctly.
    verified_count:
        Events verified before the first break (all of them when valid).
    first_break_at:
        Zero-based position of the first bad event, or ``None``.
    errors:
        Description of the break; at most one entry since the walk stops there.
    """

    is_valid: bool = True
    verified_count: int = 0
    first_break_at: int | None = None
    errors: list[str] = field(default_factory=list)

    def mark_broken(self, position: int, reason: str) -> None:
        self.is_valid = False
        self.first_break_at = position
        self.errors.append(f"Event at index {position}: {reason}")


def extract_event_data(event: dict[str, Any]) -> dict[str, Any]:
    """Strip chain metadata so only the original event payload is hashed."""
    return {k: v for k, v in event.items() if k not in CHAIN_FIELDS}


def _break_reason(event: dict[str, Any], position: int, expected_prev: str) -> str | None:
    stored_hash = event.get("event_hash")
    if stored_hash is None:
        return "missing event_hash"

    sequence = event.get("chain_sequence")
    if sequence is not None and sequence != position:
        return f"chain_sequence {sequence} out of order"

    stored_prev = event.get("prev_event_hash")
    if stored_prev is not None and stored_prev != expected_prev:
        return f"prev_event_hash mismatch (stored={stored_prev!r}, expected={expected_prev!r})"

    recomputed = compute_event_hash(extract_event_data(event), expected_prev)
    if recomputed != stored_hash:
        return f"hash mismatch (stored={stored_hash!r}, recomputed={recomputed!r})"
    return None


def verify_hash_chain(events: list[dict[str, Any]]) -> ChainVerificationResult:
    """Walk ``events`` from genesis in ``chain_sequence`` order.

    A removed, reordered or edited event breaks the chain at its position;
    nothing after the first break is trusted.
    """
    result = ChainVerificationResult()
    expected_prev = GENESIS_HASH

    for position, event in enumerate(events):
        reason = _break_reason(event, position, expected_prev)
        if reason is not None:
            result.mark_broken(position, reason)
            break
        expected_prev = str(event["event_hash"])
        result.verified_count += 1

    return result
