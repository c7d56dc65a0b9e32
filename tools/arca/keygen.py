"""CLI to generate the vault key and seal PEM files with it."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from agents.arca.errors import VaultError
from agents.arca.vault import CredentialVault, generate_key, looks_like_certificate, looks_like_private_key


def seal_file(path: Path, key_hex: str) -> str:
    content = path.read_text(encoding="utf-8")
    if not (looks_like_certificate(content) or looks_like_private_key(content)):
        raise ValueError(f"{path} is neither a PEM certificate nor a PEM private key")
    return CredentialVault(key_hex).encrypt(content.strip())


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate ARCA_ENCRYPTION_KEY or seal a PEM file")
    parser.add_argument(
        "--seal",
        type=Path,
        help="PEM file to encrypt; prints the envelope instead of a new key",
    )
    parser.add_argument("--key", help="Hex key used with --seal (default: ARCA_ENCRYPTION_KEY)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.seal is None:
        print(generate_key())
        return 0

    if args.key:
        key_hex = args.key
    else:
        from backend.core.config import settings

        key_hex = settings.ARCA_ENCRYPTION_KEY
    try:
        print(seal_file(args.seal, key_hex))
    except (OSError, ValueError, VaultError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
