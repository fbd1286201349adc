"""Tests for the per-instance event hash chain."""

import json
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from saga.audit import GENESIS_HASH, compute_event_hash, verify_chain


def build_chain(n, workflow_id="wf_1"):
    rows, prev = [], GENESIS_HASH
    for seq in range(1, n + 1):
        payload = json.dumps({"seq": seq})
        row = {
            "workflow_id": workflow_id, "sequence": seq, "event_type": "stage_change",
            "actor_type": "system", "actor_id": "orchestrator",
            "timestamp": 1700000000.0 + seq, "payload": payload, "previous_hash": prev,
        }
        row["event_hash"] = compute_event_hash(
            prev, workflow_id, seq, row["event_type"], row["actor_type"],
            row["actor_id"], row["timestamp"], payload,
        )
        prev = row["event_hash"]
        rows.append(row)
    return rows


class TestVerifyChain(unittest.TestCase):

    def test_empty(self):
        valid, message = verify_chain([])
        self.assertTrue(valid)
        self.assertIn("Empty", message)

    def test_intact(self):
        valid, message = verify_chain(build_chain(5))
        self.assertTrue(valid)
        self.assertIn("5 events", message)

    def test_tampered_payload(self):
        rows = build_chain(4)
        rows[2]["payload"] = json.dumps({"seq": 99})
        valid, message = verify_chain(rows)
        self.assertFalse(valid)
        self.assertIn("sequence 3", message)

    def test_deleted_row(self):
        rows = build_chain(4)
        del rows[1]
        valid, message = verify_chain(rows)
        self.assertFalse(valid)
        self.assertIn("Sequence gap", message)

    def test_hash_depends_on_previous(self):
        a = compute_event_hash(GENESIS_HASH, "wf_1", 1, "x", "system", "o", 1.0, "{}")
        b = compute_event_hash("f" * 64, "wf_1", 1, "x", "system", "o", 1.0, "{}")
        self.assertNotEqual(a, b)
        self.assertEqual(len(a), 64)


if __name__ == "__main__":
    unittest.main()
