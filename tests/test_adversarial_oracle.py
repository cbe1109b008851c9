"""
Adversarial Oracle Suite

Each test deploys a deliberately insecure target and asserts the oracle
catches it. Tests are designed to FAIL if a defense gap goes unreported.

Attack vectors:
- No signature verification at all
- Per-signature verification without a quorum count
- Missing emitter chain / emitter address checks
- Missing replay protection
- Several gaps at once
"""

import unittest

from vaasubmit import (
    EmitterAddressBypass,
    EmitterChainBypass,
    GuardianSet,
    MultipleDefects,
    ReplayProtectionMissing,
    TransactionError,
    VerificationBypass,
    VerificationOracle,
    sign_with,
    verify_signed_attestation,
    with_posted_signatures,
)
from vaasubmit.example_programs import read_counter, verify_vaa_callback

from _support import PROGRAM_ID, make_body, make_env, secure_program


class AdversarialTestCase(unittest.TestCase):

    def setUp(self):
        self.guardians = GuardianSet.generate(13, seed=12345)
        self.body = make_body()

    def run_oracle(self, program):
        self.env, self.payer, self.guardian_set = make_env(self.guardians, program)
        self.callback = verify_vaa_callback(PROGRAM_ID, self.payer, self.guardian_set)
        self.oracle = VerificationOracle(self.env, self.payer, self.guardians)
        return self.oracle.run(self.body, self.callback)


class TestSignatureBypass(AdversarialTestCase):
    """
    Attack Vector: Deliver a VAA the guardians never signed.

    Defense: verify_hash against the guardian set with a full quorum.
    """

    def test_no_verification_detected(self):
        report = self.run_oracle(secure_program(verify="none"))
        self.assertEqual([type(d) for d in report.defects], [VerificationBypass])
        self.assertIn("corrupted", report.defects[0].message)

    def test_remaining_checks_still_run(self):
        report = self.run_oracle(secure_program(verify="none"))
        self.assertEqual(
            report.checks_run,
            ["signature", "emitter_chain", "emitter_address", "positive", "replay"],
        )
        self.assertIsNone(report.positive_error)
        self.assertEqual(read_counter(self.env, PROGRAM_ID)[0], 1)

    def test_lenient_verifier_caught_by_sub_quorum_signatures(self):
        report = self.run_oracle(secure_program(verify="lenient"))
        self.assertEqual([type(d) for d in report.defects], [VerificationBypass])
        self.assertIn("sub-quorum", report.defects[0].message)
        self.assertNotIn("corrupted", report.defects[0].message)

    def test_with_vaa_raises_bypass(self):
        self.run_oracle(secure_program(verify="none"))
        with self.assertRaises(VerificationBypass):
            self.oracle.with_vaa(make_body(sequence=99), self.callback)

    def test_five_of_thirteen_scenario(self):
        """5 of 13 signatures: a correct verifier rejects, a lenient one accepts."""
        short = sign_with(self.body, self.guardians, range(5))
        self.assertEqual(len(short.signatures), 5)
        self.assertFalse(verify_signed_attestation(short, self.guardians))

        def deliver(program):
            env, payer, guardian_set = make_env(self.guardians, program)
            callback = verify_vaa_callback(PROGRAM_ID, payer, guardian_set)
            return with_posted_signatures(
                env, payer, 0, short.signature_bytes(),
                lambda conn, record: callback(conn, record, self.body.encode()),
            )

        with self.assertRaises(TransactionError):
            deliver(secure_program())
        deliver(secure_program(verify="lenient"))

        report = self.run_oracle(secure_program(verify="lenient"))
        self.assertIsInstance(report.defects[0], VerificationBypass)


class TestEmitterBypass(AdversarialTestCase):
    """
    Attack Vector: Genuinely signed VAA from an unexpected source.

    Defense: compare emitter chain and address with the expected emitter.
    """

    def test_missing_chain_check(self):
        report = self.run_oracle(secure_program(expected_emitter_chain=None))
        self.assertEqual([type(d) for d in report.defects], [EmitterChainBypass])

    def test_missing_address_check(self):
        report = self.run_oracle(secure_program(expected_emitter_address=None))
        self.assertEqual([type(d) for d in report.defects], [EmitterAddressBypass])

    def test_missing_both(self):
        report = self.run_oracle(
            secure_program(expected_emitter_chain=None, expected_emitter_address=None)
        )
        self.assertEqual(
            [type(d) for d in report.defects], [EmitterChainBypass, EmitterAddressBypass]
        )


class TestReplay(AdversarialTestCase):
    """
    Attack Vector: Resubmit a VAA that was already consumed.

    Defense: a per-digest marker account created on first use.
    """

    def test_missing_replay_protection(self):
        report = self.run_oracle(secure_program(replay_protection=False))
        self.assertEqual([type(d) for d in report.defects], [ReplayProtectionMissing])

    def test_replay_check_does_not_touch_real_environment(self):
        self.run_oracle(secure_program(replay_protection=False))
        self.assertEqual(read_counter(self.env, PROGRAM_ID)[0], 1)


class TestMultipleDefects(AdversarialTestCase):

    def insecure(self):
        return secure_program(
            verify="none",
            expected_emitter_chain=None,
            expected_emitter_address=None,
            replay_protection=False,
        )

    def test_every_defect_reported(self):
        report = self.run_oracle(self.insecure())
        self.assertEqual(
            [d.check for d in report.defects],
            ["signature", "emitter_chain", "emitter_address", "replay"],
        )
        self.assertFalse(report.ok)

    def test_with_vaa_raises_aggregate(self):
        self.run_oracle(self.insecure())
        with self.assertRaises(MultipleDefects) as ctx:
            self.oracle.with_vaa(make_body(sequence=7), self.callback)
        self.assertEqual(len(ctx.exception.defects), 4)

    def test_defects_are_audited(self):
        with self.assertLogs("vaasubmit.audit", level="INFO") as logs:
            self.run_oracle(self.insecure())
        defect_lines = [line for line in logs.output if "SECURITY_DEFECT" in line]
        self.assertEqual(len(defect_lines), 4)


if __name__ == "__main__":
    unittest.main()
