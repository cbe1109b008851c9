#!/usr/bin/env python3
"""
vaasubmit Walkthrough - Broadcast and Certify

This example runs the complete flow against the in-process environment:

1. Generate a 13-guardian set and sign a VAA with a 9-signature quorum
2. Broadcast it to a program implementing resolve_execute_vaa_v1
3. Certify a secure program with the verification oracle
4. Show the oracle catching an insecure program

Run with: python examples/broadcast_walkthrough.py
"""

from vaasubmit import (
    AttestationBody,
    GuardianSet,
    Keypair,
    LocalExecutionEnvironment,
    Pubkey,
    SecurityDefect,
    SignatureLifecycleManager,
    VerificationOracle,
    configure_logging,
    emitter_address_from_20,
    sign_with,
)
from vaasubmit.example_programs import VaaVerifierProgram, read_counter, verify_vaa_callback

EMITTER_CHAIN = 2
EMITTER = emitter_address_from_20(bytes.fromhex("ab" * 20))


def build_environment(program: VaaVerifierProgram, guardians: GuardianSet):
    env = LocalExecutionEnvironment()
    guardian_set = env.setup_guardians(guardians, index=0)
    program_id = Pubkey.from_label("example:vaa_verifier")
    env.add_program(program_id, program)
    payer = Keypair()
    env.airdrop(payer.pubkey, 10_000_000_000)
    return env, payer, guardian_set, program_id


def main():
    configure_logging(level="WARNING", json_format=False)

    print("=" * 70)
    print("vaasubmit - Broadcast and Certify")
    print("=" * 70)

    guardians = GuardianSet.generate(13, seed=12345)
    body = AttestationBody(
        emitter_chain=EMITTER_CHAIN,
        emitter_address=EMITTER,
        sequence=1,
        payload=b"hello from chain 2",
    )
    signed = sign_with(body, guardians, range(guardians.quorum))
    print(f"\n[1] Signed VAA with {len(signed.signatures)} of {len(guardians)} guardians")
    print(f"    Digest: {body.digest().hex()}")

    secure = VaaVerifierProgram(
        verify="shim",
        expected_emitter_chain=EMITTER_CHAIN,
        expected_emitter_address=EMITTER,
    )
    env, payer, guardian_set, program_id = build_environment(secure, guardians)

    print("\n[2] Broadcasting...")
    result = SignatureLifecycleManager(env, payer).broadcast(program_id, signed)
    print(f"    Resolved in {result.plan.iterations} iterations ({len(result.plan)} groups)")
    for signature in result.signatures:
        print(f"    Executed: {signature[:32]}...")
    print(f"    Counter: {read_counter(env, program_id)}")

    print("\n[3] Certifying the secure program...")
    env, payer, guardian_set, program_id = build_environment(secure, guardians)
    oracle = VerificationOracle(env, payer, guardians)
    report = oracle.run(body, verify_vaa_callback(program_id, payer, guardian_set))
    print(f"    Checks run: {', '.join(report.checks_run)}")
    print(f"    Defects: {len(report.defects)}")

    print("\n[4] Certifying an insecure program (no signature check, no replay marker)...")
    insecure = VaaVerifierProgram(
        verify="none",
        expected_emitter_chain=EMITTER_CHAIN,
        expected_emitter_address=EMITTER,
        replay_protection=False,
    )
    env, payer, guardian_set, program_id = build_environment(insecure, guardians)
    oracle = VerificationOracle(env, payer, guardians)
    try:
        oracle.with_vaa(body, verify_vaa_callback(program_id, payer, guardian_set))
    except SecurityDefect as e:
        print(f"    Caught: {type(e).__name__}")
        for defect in getattr(e, "defects", [e]):
            print(f"      - {defect.check}: {defect.message}")

    print("\n" + "=" * 70)


if __name__ == "__main__":
    main()
