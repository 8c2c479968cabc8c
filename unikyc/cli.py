#!/usr/bin/env python3
"""
UniKYC Command Line Interface

Usage:
    unikyc status <identifier> [--db PATH] [--names FILE]
    unikyc history <identifier> [--db PATH] [--names FILE]
    unikyc approve <record_id> [--validity-days N] [--db PATH]
    unikyc reject <record_id> [--reason TEXT] [--db PATH]
    unikyc split --input FILE --output-dir DIR [-n 5] [-k 3 | --preset 3-of-5]
    unikyc combine --bundle FILE --shares FILE... [--output FILE]
    unikyc keygen [--output FILE]
    unikyc demo
"""

import argparse
import json
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from nacl.signing import SigningKey


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def save_json(data: dict, path: str):
    """Save JSON to file."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def _engine(args):
    from unikyc import config
    from unikyc.blocklock import get_network
    from unikyc.identifiers import IdentifierResolver, InMemoryNameService, JsonFileNameService
    from unikyc.lifecycle import RecordLifecycleEngine
    from unikyc.storage import get_content_store
    from unikyc.store import SqliteRecordStore
    from unikyc.threshold import ThresholdCipher
    from unikyc.timelock import TimeLockCoordinator

    names = getattr(args, "names", None)
    name_service = JsonFileNameService(names) if names else InMemoryNameService()
    return RecordLifecycleEngine(
        resolver=IdentifierResolver(name_service),
        cipher=ThresholdCipher(),
        coordinator=TimeLockCoordinator(get_network()),
        content_store=get_content_store(),
        record_store=SqliteRecordStore(args.db or config.DB_PATH),
    )


def cmd_status(args) -> int:
    """Show the KYC status of an identifier."""
    report = _engine(args).check_status(args.identifier)
    body = report.to_public_dict()
    if report.record is not None:
        body["record_id"] = report.record.id
    print(json.dumps(body, indent=2))
    return 0 if report.has_kyc else 1


def cmd_history(args) -> int:
    records = _engine(args).history(args.identifier)
    print(json.dumps([r.to_dict() for r in records], indent=2))
    return 0


def cmd_approve(args) -> int:
    validity = timedelta(days=args.validity_days) if args.validity_days else None
    record = _engine(args).approve(args.record_id, validity)
    print(f"✓ {record.id} is now {record.status.value} until {record.expiry_date.isoformat()}")
    return 0


def cmd_reject(args) -> int:
    record = _engine(args).reject(args.record_id, args.reason)
    print(f"✗ {record.id} rejected" + (f": {record.rejection_reason}" if record.rejection_reason else ""))
    return 0


def cmd_split(args) -> int:
    """Seal a file under a threshold scheme and write one file per share."""
    from unikyc.threshold import PRESETS, ThresholdCipher, ThresholdScheme
    from unikyc.util import b64e

    plaintext = Path(args.input).read_bytes()
    if args.preset:
        scheme = PRESETS[args.preset]
    else:
        scheme = ThresholdScheme(total_shares=args.total, required_shares=args.required)
    enc = ThresholdCipher().encrypt(plaintext, scheme)

    out = Path(args.output_dir)
    out.mkdir(parents=True, exist_ok=True)
    save_json({"scheme": enc.scheme.to_dict(), "ciphertext_b64": b64e(enc.ciphertext)}, str(out / "bundle.json"))
    for share in enc.shares:
        (out / f"share-{share[0]}.bin").write_bytes(share)

    print(f"Wrote {len(enc.shares)} shares ({enc.scheme.label}) to {out}", file=sys.stderr)
    return 0


def cmd_combine(args) -> int:
    """Recover a file sealed by ``split`` from K share files."""
    from unikyc.threshold import ThresholdCipher, ThresholdScheme
    from unikyc.util import b64d

    bundle = load_json(args.bundle)
    scheme = ThresholdScheme.from_dict(bundle["scheme"])
    shares = [Path(p).read_bytes() for p in args.shares]
    plaintext = ThresholdCipher().decrypt(shares, scheme, b64d(bundle["ciphertext_b64"]))

    if args.output:
        Path(args.output).write_bytes(plaintext)
        print(f"Recovered {len(plaintext)} bytes to {args.output}", file=sys.stderr)
    else:
        sys.stdout.buffer.write(plaintext)
    return 0


def cmd_keygen(args) -> int:
    """Generate an Ed25519 key pair for a blocklock network or a client."""
    from unikyc.auth import address_for_key
    from unikyc.util import b64e

    sk = SigningKey.generate()
    data = {
        "private_key_b64": b64e(bytes(sk)),
        "public_key_b64": b64e(bytes(sk.verify_key)),
        "address": address_for_key(bytes(sk.verify_key)),
    }
    if args.output:
        save_json(data, args.output)
        print(f"Key pair saved to: {args.output}", file=sys.stderr)
    else:
        print(json.dumps(data, indent=2))
    return 0


def cmd_demo(args) -> int:
    """Walk one subject through submit, approve, unlock and release."""
    from unikyc.blocklock import SimulatedBlocklockNetwork
    from unikyc.clock import FakeClock
    from unikyc.identifiers import IdentifierResolver, InMemoryNameService
    from unikyc.lifecycle import RecordLifecycleEngine
    from unikyc.storage import InMemoryContentStore
    from unikyc.store import InMemoryRecordStore
    from unikyc.threshold import THREE_OF_FIVE, ThresholdCipher
    from unikyc.timelock import TimeLockCoordinator

    names = InMemoryNameService()
    names.register("alice.eth", "0x" + "a1" * 20)
    network = SimulatedBlocklockNetwork()
    engine = RecordLifecycleEngine(
        resolver=IdentifierResolver(names),
        cipher=ThresholdCipher(),
        coordinator=TimeLockCoordinator(network),
        content_store=InMemoryContentStore(),
        record_store=InMemoryRecordStore(),
        clock=FakeClock(),
    )

    print("=" * 60)
    print("UniKYC lifecycle demonstration")
    print("=" * 60)

    height = network.current_block_height()
    result = engine.submit_verification("alice.eth", b'{"doc":"passport"}', THREE_OF_FIVE, height + 10)
    record = result.record
    print(f"Submitted {record.id} for alice.eth ({record.identifier.address})")
    print(f"  scheme {record.threshold_scheme.label}, unlock at block {record.time_lock.unlock_block_height}")
    print(f"  status: {engine.check_status('alice.eth').status.value}")

    engine.approve(record.id)
    print(f"Approved: {engine.check_status('alice.eth').status.value}")

    estimate = engine.unlock_estimate("alice.eth")
    print(f"Unlock in {estimate.blocks_remaining} blocks (~{estimate.estimated_seconds}s)")

    network.advance_blocks(10)
    network.deliver_pending()
    print(f"Time-lock decrypted: {engine.get_record(record.id).time_lock.decrypted}")

    payload = engine.release_payload(record.id, result.shares[:3])
    print(f"Released with 3 of 5 shares: {payload.decode()}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    from unikyc.errors import KycError
    from unikyc.threshold import PRESETS

    parser = argparse.ArgumentParser(
        prog="unikyc",
        description="UniKYC record lifecycle CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  unikyc demo                                  Run demonstration
  unikyc status alice.eth --names names.json
  unikyc approve kyc-0123456789abcdef01234567 --validity-days 365
  unikyc split -i passport.pdf -d shares/ -n 5 -k 3
  unikyc combine -b shares/bundle.json -s shares/share-1.bin shares/share-4.bin shares/share-5.bin
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def store_args(p):
        p.add_argument("--db", help="SQLite record store (default: UNIKYC_DB_PATH)")

    status_parser = subparsers.add_parser("status", help="Show KYC status")
    status_parser.add_argument("identifier")
    status_parser.add_argument("--names", help="Name snapshot JSON file")
    store_args(status_parser)

    history_parser = subparsers.add_parser("history", help="List all records for an identifier")
    history_parser.add_argument("identifier")
    history_parser.add_argument("--names", help="Name snapshot JSON file")
    store_args(history_parser)

    approve_parser = subparsers.add_parser("approve", help="Approve a pending record")
    approve_parser.add_argument("record_id")
    approve_parser.add_argument("--validity-days", type=int, help="Validity in days")
    store_args(approve_parser)

    reject_parser = subparsers.add_parser("reject", help="Reject a pending record")
    reject_parser.add_argument("record_id")
    reject_parser.add_argument("--reason", help="Reason recorded on the record")
    store_args(reject_parser)

    split_parser = subparsers.add_parser("split", help="Threshold-encrypt a file")
    split_parser.add_argument("-i", "--input", required=True, help="File to encrypt")
    split_parser.add_argument("-d", "--output-dir", required=True, help="Directory for bundle and shares")
    split_parser.add_argument("-n", "--total", type=int, default=5, help="Total shares (N)")
    split_parser.add_argument("-k", "--required", type=int, default=3, help="Required shares (K)")
    split_parser.add_argument("-p", "--preset", choices=sorted(PRESETS), help="Named scheme (overrides -n and -k)")

    combine_parser = subparsers.add_parser("combine", help="Recover a file from K shares")
    combine_parser.add_argument("-b", "--bundle", required=True, help="bundle.json written by split")
    combine_parser.add_argument("-s", "--shares", nargs="+", required=True, help="Share files")
    combine_parser.add_argument("-o", "--output", help="Output file (default: stdout)")

    keygen_parser = subparsers.add_parser("keygen", help="Generate Ed25519 key pair")
    keygen_parser.add_argument("-o", "--output", help="Output JSON file")

    subparsers.add_parser("demo", help="Run demonstration")

    args = parser.parse_args(argv)

    commands = {
        "status": cmd_status,
        "history": cmd_history,
        "approve": cmd_approve,
        "reject": cmd_reject,
        "split": cmd_split,
        "combine": cmd_combine,
        "keygen": cmd_keygen,
        "demo": cmd_demo,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args)
    except KycError as e:
        print(f"✗ {e.code.value}: {e.message}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"✗ configuration: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
