"""
Onboarding Saga — Event Hash Chain

Every WorkflowEvent carries the SHA-256 of its own content plus the hash of
the previous event for the same instance. Editing or deleting any row
breaks the chain from that point on, which verify_chain reports.

The chain is per instance: sequence 1 links to GENESIS_HASH.
"""

from __future__ import annotations

import hashlib
from typing import Any, Iterable

GENESIS_HASH = "0" * 64  # chain anchor


def compute_event_hash(
    previous_hash: str,
    workflow_id: str,
    sequence: int,
    event_type: str,
    actor_type: str,
    actor_id: str,
    timestamp: float,
    payload_json: str,
) -> str:
    """Compute SHA-256 hash for a workflow event."""
    content = (
        f"{previous_hash}|{workflow_id}|{sequence}|{event_type}|"
        f"{actor_type}|{actor_id}|{timestamp}|{payload_json}"
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def verify_chain(rows: Iterable[dict[str, Any]]) -> tuple[bool, str]:
    """
    Verify hash linkage for one instance's events, ordered by sequence.

    Each row needs: workflow_id, sequence, event_type, actor_type, actor_id,
    timestamp, payload (the stored JSON string), event_hash, previous_hash.

    Returns (is_valid, message).
    """
    expected_prev = GENESIS_HASH
    expected_seq = 1
    count = 0
    for row in rows:
        seq = row["sequence"]
        if seq != expected_seq:
            return False, f"Sequence gap: expected {expected_seq}, got {seq}"

        if row["previous_hash"] != expected_prev:
            return False, (
                f"Chain broken at sequence {seq}: "
                f"expected previous_hash={expected_prev[:16]}..., "
                f"got {str(row['previous_hash'])[:16]}..."
            )

        computed = compute_event_hash(
            row["previous_hash"], row["workflow_id"], seq, row["event_type"],
            row["actor_type"], row["actor_id"], row["timestamp"], row["payload"],
        )
        if computed != row["event_hash"]:
            return False, (
                f"Tampered event at sequence {seq}: "
                f"computed hash={computed[:16]}..., "
                f"stored hash={str(row['event_hash'])[:16]}..."
            )

        expected_prev = row["event_hash"]
        expected_seq += 1
        count += 1

    if count == 0:
        return True, "Empty log, nothing to verify"
    return True, f"Chain verified: {count} events, integrity intact"
