"""Mint address normalization helpers."""

from __future__ import annotations

_BASE58_ALPHABET = set("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")


def normalize_mint(value: str | None) -> str:
    """Strip whitespace only: base58 mints are case-sensitive."""
    return str(value or "").strip()


def is_valid_mint(value: str | None) -> bool:
    mint = normalize_mint(value)
    if not 32 <= len(mint) <= 44:
        return False
    return all(ch in _BASE58_ALPHABET for ch in mint)


def short_mint(value: str | None, size: int = 8) -> str:
    mint = normalize_mint(value)
    if len(mint) <= size:
        return mint
    return f"{mint[:size]}..."
