"""
Verification oracle tests against a correctly implemented target.

A secure program must come through every enabled check with no defects,
and only the positive step may change the real environment.
"""

import unittest

from vaasubmit import (
    GuardianSet,
    ReplayPolicy,
    SecurityDefect,
    SnapshotUnavailable,
    SubmitError,
    TransactionError,
    VerificationCheckSet,
    VerificationOracle,
    sign,
)
from vaasubmit.example_programs import read_counter, verify_vaa_callback
from vaasubmit.oracle import VerificationReport

from _support import PROGRAM_ID, ScriptedConnection, make_body, make_env, secure_program

ALL_CHECKS = ["signature", "emitter_chain", "emitter_address", "positive", "replay"]


class OracleTestCase(unittest.TestCase):

    guardian_count = 13

    def setUp(self):
        self.guardians = GuardianSet.generate(self.guardian_count, seed=12345)
        self.body = make_body()

    def oracle(self, program=None):
        self.env, self.payer, self.guardian_set = make_env(self.guardians, program)
        self.callback = verify_vaa_callback(PROGRAM_ID, self.payer, self.guardian_set)
        return VerificationOracle(self.env, self.payer, self.guardians)


class TestSecureProgram(OracleTestCase):

    def test_no_defects(self):
        report = self.oracle().run(self.body, self.callback)
        self.assertTrue(report.ok, report.defects)
        self.assertEqual(report.defects, [])
        self.assertEqual(report.checks_run, ALL_CHECKS)
        self.assertEqual(report.checks_skipped, [])
        self.assertIsNone(report.positive_error)

    def test_exactly_one_durable_mutation(self):
        oracle = self.oracle()
        oracle.run(self.body, self.callback)
        self.assertEqual(read_counter(self.env, PROGRAM_ID), (1, self.body.sequence))
        # post, verify_vaa and close from the positive step only
        self.assertEqual(self.env.committed_transactions, 3)

    def test_with_vaa_returns_positive_result(self):
        receipt = self.oracle().with_vaa(self.body, self.callback)
        self.assertTrue(any("Consumed VAA" in line for line in receipt.logs))

    def test_signature_record_closed_after_positive_step(self):
        oracle = self.oracle()
        seen = []

        def callback(conn, record, body):
            seen.append((conn, record))
            return self.callback(conn, record, body)

        oracle.run(self.body, callback)
        positive = [record for conn, record in seen if conn is self.env]
        self.assertEqual(len(positive), 1)
        self.assertIsNone(self.env.get_account(positive[0]))

    def test_negative_checks_run_on_snapshots(self):
        oracle = self.oracle()
        connections = []

        def callback(conn, record, body):
            connections.append(conn)
            return self.callback(conn, record, body)

        oracle.run(self.body, callback)
        # corrupted, sub-quorum, chain, address, positive, replay
        self.assertEqual(len(connections), 6)
        self.assertEqual(sum(1 for c in connections if c is self.env), 1)
        self.assertEqual(len({id(c) for c in connections}), 6)

    def test_single_guardian_skips_sub_quorum_signatures(self):
        self.guardians = GuardianSet.single()
        oracle = self.oracle()
        calls = []

        def callback(conn, record, body):
            calls.append(record)
            return self.callback(conn, record, body)

        report = oracle.run(self.body, callback)
        self.assertTrue(report.ok)
        self.assertEqual(len(calls), 5)

    def test_repeated_runs_fail_positive_step_on_replay_marker(self):
        oracle = self.oracle()
        oracle.with_vaa(self.body, self.callback)
        report = oracle.run(self.body, self.callback)
        self.assertIsInstance(report.positive_error, TransactionError)
        self.assertIn("replay", report.checks_skipped)


class TestCheckConfiguration(OracleTestCase):

    def test_disabled_checks_are_skipped(self):
        checks = VerificationCheckSet(emitter_chain=False, emitter_address=False)
        report = self.oracle().run(self.body.with_checks(checks), self.callback)
        self.assertEqual(report.checks_skipped, ["emitter_chain", "emitter_address"])
        self.assertEqual(report.checks_run, ["signature", "positive", "replay"])

    def test_explicit_checks_override_body(self):
        checks = VerificationCheckSet(signature=False)
        report = self.oracle().run(self.body, self.callback, checks=checks)
        self.assertIn("signature", report.checks_skipped)

    def test_replayable_policy_skips_replay(self):
        checks = VerificationCheckSet(replay_policy=ReplayPolicy.REPLAYABLE)
        program = secure_program(replay_protection=False)
        oracle = self.oracle(program)
        body = self.body.with_checks(checks)
        oracle.with_vaa(body, self.callback)
        oracle.with_vaa(body, self.callback)
        self.assertEqual(read_counter(self.env, PROGRAM_ID)[0], 2)

    def test_positive_failure_reported_verbatim(self):
        program = secure_program(expected_emitter_chain=7)
        oracle = self.oracle(program)
        report = oracle.run(self.body, self.callback)
        self.assertEqual(report.defects, [])
        self.assertIsInstance(report.positive_error, TransactionError)
        self.assertNotIsInstance(report.positive_error, SecurityDefect)
        self.assertIn("replay", report.checks_skipped)
        with self.assertRaises(TransactionError):
            report.raise_for_defects()
        with self.assertRaises(TransactionError):
            oracle.with_vaa(self.body, self.callback)


class TestOracleConveniences(OracleTestCase):

    def test_snapshot_unavailable_for_plain_connections(self):
        with self.assertRaises(SnapshotUnavailable):
            VerificationOracle(ScriptedConnection(), None, self.guardians)

    def test_with_vaa_unchecked(self):
        oracle = self.oracle(secure_program(verify="none"))
        oracle.with_vaa_unchecked(self.body, self.callback)
        self.assertEqual(read_counter(self.env, PROGRAM_ID)[0], 1)

    def test_with_posted_signatures(self):
        oracle = self.oracle()
        signed = sign(self.body, self.guardians)

        def callback(conn, record):
            self.assertIsNotNone(conn.get_account(record))
            return self.callback(conn, record, self.body.encode())

        oracle.with_posted_signatures(signed.signature_bytes(), callback)
        self.assertEqual(read_counter(self.env, PROGRAM_ID)[0], 1)

    def test_report_ok(self):
        self.assertTrue(VerificationReport().ok)
        VerificationReport().raise_for_defects()

    def test_defects_are_not_infrastructure_errors(self):
        self.assertFalse(issubclass(SecurityDefect, SubmitError))


if __name__ == "__main__":
    unittest.main()
