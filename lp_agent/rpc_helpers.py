#!/usr/bin/env python3
"""
RPC Helpers — Solana JSON-RPC Client and Fixed-Layout Account Decoding
=======================================================================

Low-level Solana primitives used by the opt-in registry:

  • JSON-RPC client (getAccountInfo with base64 encoding)
  • Anchor account discriminators
  • Fixed-layout little-endian struct decoding with length and
    discriminator checks

Reference:
  Solana JSON-RPC : https://solana.com/docs/rpc/http/getaccountinfo
  Anchor accounts : https://www.anchor-lang.com/docs/basics/idl
"""

import base64
import hashlib
import struct
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx

# ── Account Layout Constants ────────────────────────────────────────────

DISCRIMINATOR_BYTES = 8       # Anchor: sha256("account:<Name>")[:8]
PUBKEY_BYTES = 32             # ed25519 public key


class AccountDecodeError(ValueError):
    """Account data does not match the expected layout."""


def anchor_discriminator(account_name: str) -> bytes:
    """First 8 bytes of sha256("account:<Name>")."""
    return hashlib.sha256(f"account:{account_name}".encode()).digest()[:DISCRIMINATOR_BYTES]


@dataclass(frozen=True)
class AccountLayout:
    """A fixed, little-endian account layout following the discriminator.

    ``fields`` pairs each field name with its ``struct`` format code.
    """

    name: str
    version: int
    fields: Tuple[Tuple[str, str], ...]

    @property
    def struct(self) -> struct.Struct:
        return struct.Struct("<" + "".join(fmt for _, fmt in self.fields))

    @property
    def size(self) -> int:
        """Total bytes including the discriminator."""
        return DISCRIMINATOR_BYTES + self.struct.size

    @property
    def discriminator(self) -> bytes:
        return anchor_discriminator(self.name)

    def decode(self, data: bytes) -> Dict[str, object]:
        """Decode ``data`` into a field dict.

        Raises:
            AccountDecodeError: if the buffer is too short or the
                discriminator belongs to another account type.
        """
        if len(data) < self.size:
            raise AccountDecodeError(
                f"{self.name} v{self.version}: expected >= {self.size} bytes, got {len(data)}"
            )
        if data[:DISCRIMINATOR_BYTES] != self.discriminator:
            raise AccountDecodeError(f"{self.name} v{self.version}: discriminator mismatch")
        values = self.struct.unpack_from(data, DISCRIMINATOR_BYTES)
        return {name: value for (name, _), value in zip(self.fields, values)}


# ── JSON-RPC ────────────────────────────────────────────────────────────


async def get_account_info(rpc_url: str, address: str, timeout: float = 10) -> Optional[bytes]:
    """Fetch raw account data via getAccountInfo.

    Returns:
        Account data bytes, or None if the account does not exist.

    Raises:
        RuntimeError: on JSON-RPC errors or unexpected encodings.
    """
    payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "getAccountInfo",
        "params": [address, {"encoding": "base64", "commitment": "confirmed"}],
    }
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(rpc_url, json=payload)
        result = resp.json()
        if "error" in result:
            raise RuntimeError(f"RPC error: {result['error'].get('message', result['error'])}")
        value = (result.get("result") or {}).get("value")
        if value is None:
            return None
        data = value.get("data") or []
        if len(data) != 2 or data[1] != "base64":
            raise RuntimeError(f"Unexpected account encoding: {data[1:] or 'missing'}")
        return base64.b64decode(data[0])
