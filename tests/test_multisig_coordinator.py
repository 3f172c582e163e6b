#!/usr/bin/env python3
"""
Multisig Session Coordinator Tests

Covers the preparing -> making -> exchanging -> ready state machine:
1. Round count for M-of-N
2. Session creation and wallet anchoring
3. Auto-triggered service steps fire exactly once
4. Capability failures keep submissions and phase
5. Round advance and final-round address
6. Role binding and phase checks
7. Post-ready reanchor and operator retry
"""

import sys
import os
import threading
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from escrow.core import Role, SessionStatus, SESSION_ORDER, total_rounds
from escrow.errors import CapabilityFailure, PhaseMismatch, RoleViolation, InvalidRequest
from escrow.store import StoreError

from fake_wallet import make_services, drive_to_ready

A = Role.PARTICIPANT_A
B = Role.PARTICIPANT_B


class TestTotalRounds(unittest.TestCase):

    def test_two_of_three(self):
        self.assertEqual(total_rounds(3, 2), 2)

    def test_general_shapes(self):
        self.assertEqual(total_rounds(2, 2), 1)
        self.assertEqual(total_rounds(3, 3), 1)
        self.assertEqual(total_rounds(5, 3), 3)

    def test_invalid_shape(self):
        with self.assertRaises(ValueError):
            total_rounds(2, 3)
        with self.assertRaises(ValueError):
            total_rounds(3, 0)


class TestSessionCreation(unittest.TestCase):

    def setUp(self):
        self.svc = make_services()
        self.wallet = self.svc.wallet

    def test_anchors_below_daemon_height(self):
        session = self.svc.multisig.create_session(owner_id="alice")
        self.assertEqual(session.status, SessionStatus.PREPARING)
        self.assertEqual(session.creation_height, 990)
        self.assertEqual(self.wallet.rebuilds, [(session.service_wallet_path, 990)])
        self.assertEqual(session.slot(Role.SERVICE).prepared_hex,
                         f"prepared:{session.service_wallet_path}")
        self.assertIsNotNone(session.service_address)
        self.assertEqual(self.wallet.open_count(), 0)

    def test_height_failure_anchors_at_zero(self):
        self.wallet.fail_next("daemon_height")
        session = self.svc.multisig.create_session()
        self.assertEqual(session.creation_height, 0)

    def test_low_height_never_negative(self):
        self.wallet.height = 3
        session = self.svc.multisig.create_session()
        self.assertEqual(session.creation_height, 0)

    def test_wallet_failure_persists_nothing(self):
        self.wallet.fail_next("prepare_multisig")
        with self.assertRaises(CapabilityFailure) as ctx:
            self.svc.multisig.create_session()
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.svc.store.list_sessions(), [])
        self.assertEqual(self.wallet.open_count(), 0)

    def test_orphaned_wallet_is_logged(self):
        self.wallet.fail_next("prepare_multisig")
        with self.assertLogs("escrow.multisig.coordinator", level="WARNING") as logs:
            with self.assertRaises(CapabilityFailure):
                self.svc.multisig.create_session()
        filename = self.wallet.calls[-1][1]
        self.assertTrue(any("Orphaned wallet" in line and filename in line for line in logs.output))

    def test_failed_create_leaves_no_orphan(self):
        self.wallet.fail_next("create_wallet")
        with self.assertLogs("escrow.multisig.coordinator", level="WARNING") as logs:
            with self.assertRaises(CapabilityFailure):
                self.svc.multisig.create_session()
        self.assertFalse(any("Orphaned wallet" in line for line in logs.output))

    def test_bindings_must_be_distinct(self):
        with self.assertRaises(InvalidRequest):
            self.svc.multisig.create_session(bindings={A: "bob", B: "bob"})


class TestSetupFlow(unittest.TestCase):

    def setUp(self):
        self.svc = make_services()
        self.ms = self.svc.multisig
        self.wallet = self.svc.wallet
        self.session = self.ms.create_session(owner_id="alice")
        self.sid = self.session.session_id

    def test_full_setup_reaches_ready(self):
        session = drive_to_ready(self.ms, self.sid, "bob", "sam")
        self.assertEqual(session.status, SessionStatus.READY)
        self.assertEqual(session.exchange_round, 2)
        self.assertEqual(session.multisig_address, f"5addr_{session.service_wallet_path}")
        self.assertTrue(session.reanchored)
        self.assertEqual(session.reanchored_height, 990)
        self.assertEqual(self.wallet.open_count(), 0)

    def test_status_only_moves_forward(self):
        seen = [self.ms.get_session(self.sid).status]

        def step(fn, *args, **kwargs):
            fn(*args, **kwargs)
            seen.append(self.ms.get_session(self.sid).status)

        step(self.ms.submit_prepared, self.sid, A, "pa")
        step(self.ms.submit_prepared, self.sid, B, "pb")
        step(self.ms.submit_made, self.sid, A, "ma")
        step(self.ms.submit_made, self.sid, B, "mb")
        for r in range(2):
            step(self.ms.submit_exchange, self.sid, A, f"ka{r}")
            step(self.ms.submit_exchange, self.sid, B, f"kb{r}")

        indexes = [SESSION_ORDER.index(s) for s in seen]
        self.assertEqual(indexes, sorted(indexes))
        self.assertEqual(seen[-1], SessionStatus.READY)

    def test_store_rejects_backwards_status(self):
        drive_to_ready(self.ms, self.sid)
        with self.assertRaises(StoreError):
            self.svc.store.update_session(self.sid, status=SessionStatus.MAKING)

    def test_address_is_write_once(self):
        session = drive_to_ready(self.ms, self.sid)
        with self.assertRaises(StoreError):
            self.svc.store.update_session(self.sid, multisig_address="5other")
        # Same value is accepted
        self.svc.store.update_session(self.sid, multisig_address=session.multisig_address)

    def test_auto_make_once_a_then_b(self):
        self.ms.submit_prepared(self.sid, A, "pa")
        self.assertEqual(self.wallet.count("make_multisig"), 0)
        self.ms.submit_prepared(self.sid, B, "pb")
        self.assertEqual(self.wallet.count("make_multisig"), 1)
        self.assertEqual(self.ms.get_session(self.sid).status, SessionStatus.MAKING)

    def test_auto_make_once_with_resubmission(self):
        self.ms.submit_prepared(self.sid, B, "pb")
        self.ms.submit_prepared(self.sid, B, "pb2")
        self.ms.submit_prepared(self.sid, A, "pa")
        self.ms.submit_made(self.sid, A, "ma")
        self.ms.submit_made(self.sid, B, "mb")
        self.assertEqual(self.wallet.count("make_multisig"), 1)
        peers, threshold = self.wallet.args_of("make_multisig")[0]
        self.assertEqual(peers, ("pa", "pb2"))
        self.assertEqual(threshold, 2)

    def test_auto_make_once_under_concurrency(self):
        errors = []

        def submit(role, blob):
            try:
                self.ms.submit_prepared(self.sid, role, blob)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit, args=(A, "pa")),
                   threading.Thread(target=submit, args=(B, "pb"))]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(self.wallet.count("make_multisig"), 1)
        self.assertEqual(self.ms.get_session(self.sid).status, SessionStatus.MAKING)

    def test_exchange_step_once_per_round_under_concurrency(self):
        self.ms.submit_prepared(self.sid, A, "pa")
        self.ms.submit_prepared(self.sid, B, "pb")
        self.ms.submit_made(self.sid, A, "ma")
        self.ms.submit_made(self.sid, B, "mb")
        rounds = self.ms.rounds(self.ms.get_session(self.sid))
        errors = []

        def submit(role, blob, n):
            try:
                self.ms.submit_exchange(self.sid, role, blob, exchange_round=n)
            except Exception as e:
                errors.append(e)

        for n in range(rounds):
            threads = [threading.Thread(target=submit, args=(A, f"xa{n}", n)),
                       threading.Thread(target=submit, args=(B, f"xb{n}", n))]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            self.assertEqual(self.wallet.count("exchange_multisig_keys"), n + 1)

        session = self.ms.get_session(self.sid)
        self.assertEqual(errors, [])
        self.assertEqual(session.status, SessionStatus.READY)
        self.assertEqual(session.multisig_address, f"5addr_{session.service_wallet_path}")
        self.assertEqual(self.wallet.count("exchange_multisig_keys"), rounds)

    def test_make_failure_keeps_submissions_and_phase(self):
        self.wallet.fail_next("make_multisig")
        self.ms.submit_prepared(self.sid, A, "pa")
        with self.assertRaises(CapabilityFailure):
            self.ms.submit_prepared(self.sid, B, "pb")

        session = self.ms.get_session(self.sid)
        self.assertEqual(session.status, SessionStatus.PREPARING)
        self.assertEqual(session.slot(A).prepared_hex, "pa")
        self.assertEqual(session.slot(B).prepared_hex, "pb")
        self.assertIsNone(session.slot(Role.SERVICE).made_hex)
        self.assertIn("make_multisig", session.last_error)
        self.assertEqual(self.ms.get_status(self.sid)["pending_service_step"], "make")

        session = self.ms.retry_service_step(self.sid)
        self.assertEqual(session.status, SessionStatus.MAKING)
        self.assertIsNotNone(session.slot(Role.SERVICE).made_hex)
        self.assertIsNone(session.last_error)

    def test_exchange_inputs_per_round(self):
        self.ms.submit_prepared(self.sid, A, "pa")
        self.ms.submit_prepared(self.sid, B, "pb")
        self.ms.submit_made(self.sid, A, "ma")
        self.ms.submit_made(self.sid, B, "mb")
        self.ms.submit_exchange(self.sid, A, "ka0")
        self.ms.submit_exchange(self.sid, B, "kb0")

        session = self.ms.get_session(self.sid)
        self.assertEqual(session.exchange_round, 1)
        self.assertEqual(session.status, SessionStatus.EXCHANGING)
        for role in Role:
            self.assertIsNone(session.slot(role).exchange_hex)
        self.assertEqual(session.slot(A).exchange_hex_prev, "ka0")
        self.assertEqual(session.slot(B).exchange_hex_prev, "kb0")
        self.assertIsNotNone(session.slot(Role.SERVICE).exchange_hex_prev)

        self.ms.submit_exchange(self.sid, A, "ka1")
        self.ms.submit_exchange(self.sid, B, "kb1")

        rounds = self.wallet.args_of("exchange_multisig_keys")
        self.assertEqual(len(rounds), 2)
        self.assertEqual(rounds[0], (("ma", "mb"),))
        self.assertEqual(rounds[1], (("ka0", "kb0"),))
        self.assertEqual(self.ms.get_session(self.sid).status, SessionStatus.READY)

    def test_final_round_accepts_empty_blob(self):
        self.ms.submit_prepared(self.sid, A, "pa")
        self.ms.submit_prepared(self.sid, B, "pb")
        self.ms.submit_made(self.sid, A, "ma")
        self.ms.submit_made(self.sid, B, "mb")
        self.ms.submit_exchange(self.sid, A, "ka0")
        self.ms.submit_exchange(self.sid, B, "kb0")
        self.ms.submit_exchange(self.sid, A, "")
        session = self.ms.submit_exchange(self.sid, B, "")
        self.assertEqual(session.status, SessionStatus.READY)

    def test_wrong_round_rejected(self):
        self.ms.submit_prepared(self.sid, A, "pa")
        self.ms.submit_prepared(self.sid, B, "pb")
        self.ms.submit_made(self.sid, A, "ma")
        self.ms.submit_made(self.sid, B, "mb")
        with self.assertRaises(PhaseMismatch) as ctx:
            self.ms.submit_exchange(self.sid, A, "ka1", exchange_round=1)
        self.assertEqual(ctx.exception.current_status, "exchanging")

    def test_phase_mismatch_echoes_status(self):
        self.ms.submit_prepared(self.sid, A, "pa")
        self.ms.submit_prepared(self.sid, B, "pb")
        with self.assertRaises(PhaseMismatch) as ctx:
            self.ms.submit_prepared(self.sid, A, "pa-again")
        self.assertEqual(ctx.exception.current_status, "making")
        with self.assertRaises(PhaseMismatch):
            self.ms.submit_exchange(self.sid, A, "ka0")

    def test_service_role_cannot_be_submitted(self):
        with self.assertRaises(RoleViolation):
            self.ms.submit_prepared(self.sid, Role.SERVICE, "forged")
        with self.assertRaises(RoleViolation):
            self.ms.submit_prepared(self.sid, "service", "forged")

    def test_unknown_role_rejected(self):
        with self.assertRaises(InvalidRequest):
            self.ms.submit_prepared(self.sid, "participant_c", "blob")

    def test_empty_prepared_rejected(self):
        with self.assertRaises(InvalidRequest):
            self.ms.submit_prepared(self.sid, A, "  ")

    def test_role_binding(self):
        self.ms.submit_prepared(self.sid, A, "pa", user_id="bob")
        with self.assertRaises(RoleViolation):
            self.ms.submit_prepared(self.sid, A, "pa-evil", user_id="mallory")
        with self.assertRaises(RoleViolation):
            self.ms.submit_prepared(self.sid, B, "pb", user_id="bob")
        self.assertEqual(self.ms.get_session(self.sid).slot(A).prepared_hex, "pa")

    def test_status_projection(self):
        self.ms.submit_prepared(self.sid, A, "pa", user_id="bob")
        status = self.ms.get_status(self.sid)
        self.assertEqual(status["status"], "preparing")
        self.assertEqual(status["total_rounds"], 2)
        self.assertTrue(status["roles"]["participant_a"]["prepared"])
        self.assertFalse(status["roles"]["participant_b"]["prepared"])
        self.assertEqual(status["roles"]["participant_a"]["user_id"], "bob")
        self.assertEqual(status["blobs"]["prepared"]["participant_a"], "pa")
        self.assertIsNone(status["multisig_address"])


class TestReanchor(unittest.TestCase):

    def setUp(self):
        self.svc = make_services()
        self.ms = self.svc.multisig
        self.wallet = self.svc.wallet
        self.sid = self.ms.create_session().session_id

    def test_reanchor_failure_left_pending_then_retried(self):
        self.wallet.fail_next("rebuild_from_seed_at_height")
        session = drive_to_ready(self.ms, self.sid)
        self.assertEqual(session.status, SessionStatus.READY)
        self.assertFalse(session.reanchored)
        self.assertTrue(self.ms.get_status(self.sid)["reanchor_pending"])

        session = self.ms.retry_service_step(self.sid)
        self.assertTrue(session.reanchored)
        self.assertFalse(self.ms.get_status(self.sid)["reanchor_pending"])

    def test_reanchor_is_idempotent(self):
        drive_to_ready(self.ms, self.sid)
        before = self.wallet.count("rebuild_from_seed_at_height")
        self.ms.reanchor(self.sid)
        self.ms.reanchor(self.sid)
        self.assertEqual(self.wallet.count("rebuild_from_seed_at_height"), before)

    def test_reanchor_disabled(self):
        svc = make_services(reanchor_after_ready=False)
        sid = svc.multisig.create_session().session_id
        session = drive_to_ready(svc.multisig, sid)
        self.assertFalse(session.reanchored)
        self.assertFalse(svc.multisig.reanchor_pending(session))
        self.assertEqual(svc.wallet.count("rebuild_from_seed_at_height"), 1)

    def test_reanchor_before_ready_rejected(self):
        with self.assertRaises(PhaseMismatch):
            self.ms.reanchor(self.sid)

    def test_retry_with_nothing_pending(self):
        with self.assertRaises(PhaseMismatch):
            self.ms.retry_service_step(self.sid)
        drive_to_ready(self.ms, self.sid)
        with self.assertRaises(PhaseMismatch):
            self.ms.retry_service_step(self.sid)


if __name__ == "__main__":
    unittest.main(verbosity=2)
