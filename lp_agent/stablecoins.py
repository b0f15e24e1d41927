"""
Stablecoin Detection — Solana Token Classification
===================================================

Provides stablecoin detection for:
  - Price lookups (a stablecoin is priced at $1.00 without a network call)
  - USD value calculation when one side of a pool is a stablecoin
  - Pair classification (stable-stable, stable-volatile, volatile-volatile)

Known stablecoins are recognized by normalized symbol.
"""

# ── Known Stablecoin Symbols ────────────────────────────────────────────
# Normalized to uppercase. Includes bridged (Wormhole) variants.

STABLECOIN_SYMBOLS: frozenset = frozenset({
    # USD-pegged: native SPL
    "USDC", "USDT", "PYUSD", "USDH", "UXD", "USDS", "USDY",

    # USD-pegged: bridged variants
    "USDCET", "USDTET", "USDC.WH", "USDT.WH",

    # EUR-pegged (treated as $1-ish for pair classification)
    "EURC",
})


def is_stablecoin(symbol: str) -> bool:
    """
    Check if a token symbol is a known stablecoin.

    Examples:
        >>> is_stablecoin("USDC")
        True
        >>> is_stablecoin("usdh")
        True
        >>> is_stablecoin("SOL")
        False
    """
    return symbol.strip().upper() in STABLECOIN_SYMBOLS


def is_stablecoin_pair(symbol_a: str, symbol_b: str) -> bool:
    return is_stablecoin(symbol_a) and is_stablecoin(symbol_b)


def classify_pair(symbol_a: str, symbol_b: str) -> str:
    """
    Classify a token pair.

    Returns:
        "stable-stable"    — Both tokens are stablecoins
        "stable-volatile"  — One stablecoin + one volatile
        "volatile-volatile"— Neither is a stablecoin
    """
    s_a = is_stablecoin(symbol_a)
    s_b = is_stablecoin(symbol_b)
    if s_a and s_b:
        return "stable-stable"
    elif s_a or s_b:
        return "stable-volatile"
    return "volatile-volatile"


def stablecoin_side(symbol_a: str, symbol_b: str) -> int:
    """
    Identify which side of the pair is the stablecoin.

    Returns:
        0  — token A is the stablecoin
        1  — token B is the stablecoin
        -1 — neither or both are stablecoins
    """
    s_a = is_stablecoin(symbol_a)
    s_b = is_stablecoin(symbol_b)
    if s_a and not s_b:
        return 0
    elif s_b and not s_a:
        return 1
    return -1
