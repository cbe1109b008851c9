"""
Signature lifecycle and end-to-end broadcast tests.

The record posted for a broadcast must be closed exactly once on every exit
path, and a cleanup failure must never replace the original error.
"""

import unittest

from vaasubmit import (
    ExecutionFailure,
    GuardianSet,
    ResolutionExhausted,
    SignatureLifecycleError,
    SignatureLifecycleManager,
    UnsupportedPlan,
    broadcast_vaa,
    sign,
    sign_with,
)
from vaasubmit.example_programs import (
    RESOLVE_NEVER,
    RESOLVE_WITHOUT_SHIM,
    VaaVerifierProgram,
    counter_address,
    read_counter,
    replay_marker_address,
)
from vaasubmit.errors import TransactionError
from vaasubmit.logging_config import get_correlation_id
from vaasubmit.shim import build_close_signatures_ix
from vaasubmit.transaction import Pubkey, Transaction

from _support import EMITTER, EMITTER_CHAIN, LAMPORTS, PROGRAM_ID, make_body, make_env, secure_program


class CountingManager(SignatureLifecycleManager):
    """Records every post and close; can be told to fail the close."""

    fail_close = False

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.posted_records = []
        self.closed_records = []

    def post_signatures(self, guardian_set_index, signatures):
        record = super().post_signatures(guardian_set_index, signatures)
        self.posted_records.append(record)
        return record

    def close_signatures(self, record, rent_recipient=None):
        self.closed_records.append(record)
        if self.fail_close:
            raise SignatureLifecycleError("close_signatures", RuntimeError("injected"), record)
        super().close_signatures(record, rent_recipient)


class PanickingVerifier(VaaVerifierProgram):
    """Resolves normally, then crashes with a non-program error on verify_vaa."""

    def _verify_vaa(self, ctx, instruction):
        raise KeyError("program bug")


class BroadcastTestCase(unittest.TestCase):

    def setUp(self):
        self.guardians = GuardianSet.generate(13, seed=12345)
        self.body = make_body()
        self.signed = sign_with(self.body, self.guardians, range(9))

    def manager(self, program=None, **kwargs):
        self.env, self.payer, self.guardian_set = make_env(self.guardians, program, **kwargs)
        return CountingManager(self.env, self.payer)


class TestBroadcast(BroadcastTestCase):

    def test_successful_broadcast(self):
        manager = self.manager()
        result = manager.broadcast(PROGRAM_ID, self.signed)
        self.assertEqual(len(result.receipts), 1)
        self.assertEqual(result.plan.iterations, 2)
        self.assertEqual(read_counter(self.env, PROGRAM_ID), (1, self.body.sequence))
        self.assertIsNone(self.env.get_account(result.signatures_address))
        self.assertEqual(manager.posted_records, [result.signatures_address])
        self.assertEqual(manager.closed_records, [result.signatures_address])
        self.assertEqual(len(result.signatures), 1)

    def test_broadcast_sets_correlation_id(self):
        self.manager().broadcast(PROGRAM_ID, self.signed)
        self.assertTrue(get_correlation_id())

    def test_sub_quorum_vaa_fails_and_still_closes(self):
        manager = self.manager()
        short = sign_with(self.body, self.guardians, range(5))
        with self.assertRaises(ExecutionFailure) as ctx:
            manager.broadcast(PROGRAM_ID, short)
        self.assertEqual(ctx.exception.group_index, 0)
        self.assertEqual(len(manager.posted_records), 1)
        self.assertEqual(manager.closed_records, manager.posted_records)
        self.assertIsNone(self.env.get_account(manager.posted_records[0]))
        self.assertEqual(read_counter(self.env, PROGRAM_ID), (0, None))

    def test_wrong_emitter_fails_and_still_closes(self):
        manager = self.manager()
        wrong = sign(make_body(emitter_chain=5), self.guardians)
        with self.assertRaises(ExecutionFailure):
            manager.broadcast(PROGRAM_ID, wrong)
        self.assertEqual(len(manager.closed_records), 1)

    def test_second_delivery_rejected_by_replay_marker(self):
        manager = self.manager()
        manager.broadcast(PROGRAM_ID, self.signed)
        with self.assertRaises(ExecutionFailure):
            manager.broadcast(PROGRAM_ID, self.signed)
        self.assertEqual(len(manager.posted_records), 2)
        self.assertEqual(manager.closed_records, manager.posted_records)
        self.assertEqual(read_counter(self.env, PROGRAM_ID)[0], 1)

    def test_resolution_failure_posts_nothing(self):
        manager = self.manager(secure_program(resolve_mode=RESOLVE_NEVER))
        with self.assertRaises(ResolutionExhausted):
            manager.broadcast(PROGRAM_ID, self.signed, max_iterations=3)
        self.assertEqual(manager.posted_records, [])
        self.assertEqual(manager.closed_records, [])

    def test_plan_without_signature_record_is_unsupported(self):
        manager = self.manager(secure_program(resolve_mode=RESOLVE_WITHOUT_SHIM))
        with self.assertRaises(UnsupportedPlan):
            manager.broadcast(PROGRAM_ID, self.signed)
        self.assertEqual(manager.posted_records, [])

    def test_program_panic_is_execution_failure_and_still_closes(self):
        manager = self.manager(PanickingVerifier(
            expected_emitter_chain=EMITTER_CHAIN, expected_emitter_address=EMITTER,
        ))
        with self.assertRaises(ExecutionFailure) as ctx:
            manager.broadcast(PROGRAM_ID, self.signed)
        self.assertEqual(ctx.exception.group_index, 0)
        self.assertIsInstance(ctx.exception.cause, TransactionError)
        self.assertIsInstance(ctx.exception.cause.__cause__, KeyError)
        self.assertEqual(manager.closed_records, manager.posted_records)
        self.assertEqual(len(manager.closed_records), 1)

    def test_post_failure(self):
        self.manager()
        manager = CountingManager(self.env, self.payer, shim_program_id=Pubkey.from_label("no shim"))
        with self.assertRaises(SignatureLifecycleError) as ctx:
            manager.broadcast(PROGRAM_ID, self.signed)
        self.assertEqual(ctx.exception.operation, "post_signatures")
        self.assertEqual(manager.closed_records, [])

    def test_close_failure_after_success_is_reported(self):
        manager = self.manager()
        manager.fail_close = True
        with self.assertRaises(SignatureLifecycleError) as ctx:
            manager.broadcast(PROGRAM_ID, self.signed)
        self.assertEqual(ctx.exception.operation, "close_signatures")
        self.assertEqual(len(manager.closed_records), 1)
        self.assertEqual(read_counter(self.env, PROGRAM_ID)[0], 1)

    def test_execution_failure_takes_precedence_over_close_failure(self):
        manager = self.manager()
        manager.fail_close = True
        short = sign_with(self.body, self.guardians, range(5))
        with self.assertRaises(ExecutionFailure) as ctx:
            manager.broadcast(PROGRAM_ID, short)
        self.assertIsInstance(ctx.exception.cleanup_error, SignatureLifecycleError)
        self.assertEqual(len(manager.closed_records), 1)

    def test_non_default_guardian_set_index(self):
        self.env, self.payer, _ = make_env(self.guardians, index=3)
        signed = sign(self.body, self.guardians, guardian_set_index=3)
        result = broadcast_vaa(self.env, self.payer, PROGRAM_ID, signed)
        self.assertEqual(len(result.receipts), 1)

    def test_rent_is_refunded(self):
        manager = self.manager()
        manager.broadcast(PROGRAM_ID, self.signed)
        marker_and_counter = LAMPORTS - self.env.balance(self.payer.pubkey)
        for address in manager.posted_records:
            self.assertIsNone(self.env.get_account(address))
        self.assertGreater(marker_and_counter, 0)
        self.assertEqual(
            marker_and_counter,
            sum(self.env.get_account(a).lamports for a in self._program_accounts()),
        )

    def _program_accounts(self):
        return [counter_address(PROGRAM_ID), replay_marker_address(PROGRAM_ID, self.body.digest())]


class TestPostedBracket(BroadcastTestCase):

    def close_now(self, record):
        ix = build_close_signatures_ix(record, self.payer.pubkey, self.payer.pubkey)
        tx = Transaction.new_signed_with_payer([ix], self.payer, [], self.env.get_latest_blockhash())
        self.env.send_and_confirm(tx)

    def test_closes_on_normal_exit(self):
        manager = self.manager()
        with manager.posted(0, self.signed.signature_bytes()) as record:
            self.assertIsNotNone(self.env.get_account(record))
        self.assertIsNone(self.env.get_account(record))

    def test_closes_when_body_raises(self):
        manager = self.manager()
        with self.assertRaises(KeyError):
            with manager.posted(0, self.signed.signature_bytes()) as record:
                raise KeyError("boom")
        self.assertIsNone(self.env.get_account(record))
        self.assertEqual(manager.closed_records, [record])

    def test_close_failure_after_clean_exit_raises(self):
        manager = self.manager()
        with self.assertRaises(SignatureLifecycleError) as ctx:
            with manager.posted(0, self.signed.signature_bytes()) as record:
                self.close_now(record)
        self.assertEqual(ctx.exception.address, record)

    def test_primary_error_wins_over_close_failure(self):
        manager = self.manager()
        with self.assertRaises(RuntimeError) as ctx:
            with manager.posted(0, self.signed.signature_bytes()) as record:
                self.close_now(record)
                raise RuntimeError("primary")
        self.assertEqual(str(ctx.exception), "primary")
        self.assertIsInstance(ctx.exception.cleanup_error, SignatureLifecycleError)
        self.assertEqual(len(manager.closed_records), 1)

    def test_rent_recipient(self):
        manager = self.manager()
        recipient = Pubkey.from_label("rent recipient")
        with manager.posted(0, self.signed.signature_bytes(), rent_recipient=recipient):
            pass
        self.assertGreater(self.env.balance(recipient), 0)


if __name__ == "__main__":
    unittest.main()
