"""
Evidence Seal CLI

Command-line interface for sealing, opening and verifying evidence files.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from .audit import HMACChain, JSONLAuditSink
from .core.config import Config
from .core.engine import EvidencePipeline
from .core.evidence import BatchMembership, IntegrityProof
from .core.exceptions import ConfigurationError, EvidenceSealError
from .hashing import ContentHasher
from .merkle import MerkleBatcher
from .observability import setup_logging

logger = logging.getLogger(__name__)


def load_config(config_path: Optional[str]) -> Config:
    """Load configuration from file or use defaults."""
    if config_path:
        return Config.from_file(config_path)
    return Config()


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="evidence-seal",
        description="Evidence Seal - evidence integrity and encryption pipeline",
    )

    parser.add_argument(
        "-c", "--config",
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (overrides config)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (rotated at 50MB)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Hash
    hash_parser = subparsers.add_parser("hash", help="Compute content hashes")
    hash_parser.add_argument("files", nargs="+", help="Files to hash")
    hash_parser.add_argument(
        "--algorithm",
        default=None,
        help="Hash algorithm (default from config)",
    )

    # Merkle
    merkle_parser = subparsers.add_parser(
        "merkle", help="Build a batch commitment over files"
    )
    merkle_parser.add_argument("files", nargs="+", help="Files in batch order")
    merkle_parser.add_argument(
        "--policy",
        choices=["promote", "duplicate"],
        default=None,
        help="Odd node policy (default from config)",
    )

    # Seal
    seal_parser = subparsers.add_parser(
        "seal", help="Hash, encrypt, prove and store files"
    )
    seal_parser.add_argument("files", nargs="+", help="Files to seal")
    seal_parser.add_argument("--identity", required=True, help="Uploader identity")
    seal_parser.add_argument("--case", required=True, dest="case_id", help="Case ID")
    seal_parser.add_argument("--description", default="", help="Evidence description")
    seal_parser.add_argument(
        "--batch",
        action="store_true",
        help="Seal a single file as a batch of one",
    )

    # Open
    open_parser = subparsers.add_parser("open", help="Download and decrypt a file")
    open_parser.add_argument("file_id", help="File ID returned by seal")
    open_parser.add_argument(
        "-o", "--output",
        help="Output path (default: original file name in current directory)",
    )

    # Verify
    verify_parser = subparsers.add_parser(
        "verify", help="Verify a file against its integrity proof"
    )
    verify_parser.add_argument("file", help="File to verify")
    source = verify_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--file-id", help="Use the proof recorded for this file ID")
    source.add_argument("--receipt", help="Path to a receipt JSON written by seal")
    verify_parser.add_argument(
        "--anchored-root",
        help="Externally anchored batch root to check against",
    )

    # Audit
    audit_parser = subparsers.add_parser(
        "audit-verify", help="Verify the audit trail hash chain"
    )
    audit_parser.add_argument(
        "--path",
        help="Audit JSONL file (default from config)",
    )

    # Version
    subparsers.add_parser("version", help="Show version")

    return parser


def local_config(config: Config) -> Config:
    """Persist storage and key records on disk between invocations."""
    if config.storage.backend == "memory":
        config.storage.backend = "directory"
    if config.keystore.backend == "memory":
        config.keystore.backend = "file"
    return config


def cmd_hash(args: argparse.Namespace, config: Config) -> int:
    """Print content hashes."""
    hasher = ContentHasher(
        algorithm=args.algorithm or config.hashing.algorithm,
        chunk_size=config.hashing.chunk_size,
    )
    results = []
    for path in args.files:
        results.append({"file": path, "hash": str(hasher.hash_file(path))})
    print(json.dumps(results, indent=2))
    return 0


def cmd_merkle(args: argparse.Namespace, config: Config) -> int:
    """Print the batch root and each file's inclusion path."""
    hasher = ContentHasher.from_config(config.hashing)
    batcher = MerkleBatcher(args.policy or config.merkle.odd_node_policy)

    leaves = [hasher.hash_file(path) for path in args.files]
    tree = batcher.build_tree(leaves)

    print(json.dumps({
        "root": tree.root,
        "policy": tree.policy,
        "leaves": [
            {
                "file": path,
                "hash": str(leaf),
                "index": i,
                "path": [step.to_dict() for step in tree.path(i)],
            }
            for i, (path, leaf) in enumerate(zip(args.files, leaves))
        ],
    }, indent=2))
    return 0


async def cmd_seal(args: argparse.Namespace, config: Config) -> int:
    """Seal files into the local evidence store."""
    paths = [Path(p) for p in args.files]

    async with EvidencePipeline(local_config(config)) as pipeline:
        if len(paths) == 1 and not args.batch:
            receipt = await pipeline.upload(
                paths[0],
                file_name=paths[0].name,
                identity=args.identity,
                case_id=args.case_id,
                description=args.description,
            )
            output = receipt.to_dict()
        else:
            result = await pipeline.upload_batch(
                [(p.name, p) for p in paths],
                identity=args.identity,
                case_id=args.case_id,
                description=args.description,
            )
            output = result.to_dict()

    print(json.dumps(output, indent=2))
    return 0


async def cmd_open(args: argparse.Namespace, config: Config) -> int:
    """Download and decrypt a file."""
    async with EvidencePipeline(local_config(config)) as pipeline:
        result = await pipeline.download(args.file_id)

    output = Path(args.output or result.file_name or f"{args.file_id}.bin")
    output.write_bytes(result.data)
    print(json.dumps({
        "file_id": result.file_id,
        "output": str(output),
        "decrypted": result.decrypted,
        "size": len(result.data),
    }, indent=2))
    return 0


async def cmd_verify(args: argparse.Namespace, config: Config) -> int:
    """Verify a file; exit status 1 when tampered."""
    path = Path(args.file)

    async with EvidencePipeline(local_config(config)) as pipeline:
        if args.file_id:
            if args.anchored_root:
                stored = pipeline.proof_store.get(args.file_id)
                if stored is None:
                    print(f"No proof recorded for {args.file_id}", file=sys.stderr)
                    return 1
                proof, membership = stored
                result = await pipeline.verify(
                    path, proof, membership, args.anchored_root, file_id=args.file_id
                )
            else:
                result = await pipeline.verify_file(args.file_id, path)
        else:
            with open(args.receipt) as f:
                receipt = json.load(f)
            if not receipt.get("proof") and not receipt.get("membership"):
                print("Receipt carries no integrity proof", file=sys.stderr)
                return 1
            proof = None
            if receipt.get("proof"):
                proof = IntegrityProof.from_dict(receipt["proof"])
            membership = None
            if receipt.get("membership"):
                membership = BatchMembership.from_dict(receipt["membership"])
            anchored_root = args.anchored_root or await pipeline.resolve_anchored_root(membership)
            result = await pipeline.verify(
                path, proof, membership, anchored_root,
                file_id=receipt.get("file_id"),
            )

    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.verified else 1


async def cmd_audit_verify(args: argparse.Namespace, config: Config) -> int:
    """Verify the audit chain on disk."""
    path = args.path or config.audit.storage_path
    if not path:
        print("No audit file given and audit.storage_path is not set", file=sys.stderr)
        return 1

    key = os.environ.get(config.audit.hmac_key_env)
    if not key:
        print(f"{config.audit.hmac_key_env} is not set", file=sys.stderr)
        return 1

    events = await JSONLAuditSink(path).read_all()
    valid, errors = HMACChain(key.encode("utf-8")).verify_chain(events)

    print(json.dumps({
        "path": str(path),
        "events": len(events),
        "valid": valid,
        "errors": errors,
    }, indent=2))
    return 0 if valid else 1


def cmd_version(args: argparse.Namespace, config: Config) -> int:
    """Show version."""
    from . import __version__
    print(f"Evidence Seal v{__version__}")
    return 0


async def async_main(args: argparse.Namespace, config: Config) -> int:
    """Async main entry point."""
    try:
        if args.command == "hash":
            return cmd_hash(args, config)

        elif args.command == "merkle":
            return cmd_merkle(args, config)

        elif args.command == "seal":
            return await cmd_seal(args, config)

        elif args.command == "open":
            return await cmd_open(args, config)

        elif args.command == "verify":
            return await cmd_verify(args, config)

        elif args.command == "audit-verify":
            return await cmd_audit_verify(args, config)

        elif args.command == "version":
            return cmd_version(args, config)

        else:
            print("No command specified. Use --help for usage.")
            return 1

    except EvidenceSealError as e:
        logger.error(f"{args.command} failed: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, ConfigurationError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1

    log_level = "DEBUG" if args.verbose else (args.log_level or config.log_level)
    setup_logging(log_level, json_format=config.json_logs, log_file=args.log_file)

    return asyncio.run(async_main(args, config))


if __name__ == "__main__":
    sys.exit(main())
