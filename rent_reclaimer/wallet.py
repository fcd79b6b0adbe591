"""Local keypair wallet: loads a solana-keygen file and signs batches itself."""

from __future__ import annotations

import gzip
import json
from logging import getLogger
from pathlib import Path

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .errors import SignerRejected
from .rpc import RpcConnection

log = getLogger(__name__)


def load_keypair_any(path: Path) -> Keypair:
    """Load a solana-keygen style keypair from .json or .json.gz.

    Supports:
      - JSON array of 64 ints (Solana CLI default)
      - base58 string of 64 raw bytes
    """
    if path.name.endswith(".json.gz") or path.suffix == ".gz":
        with gzip.open(path, "rt", encoding="utf-8") as fh:
            payload = json.load(fh)
    else:
        with path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)

    if isinstance(payload, list):
        raw = bytes(int(x) for x in payload)
        if len(raw) != 64:
            raise ValueError(f"Keypair must be 64 bytes (got {len(raw)}): {path}")
        return Keypair.from_bytes(raw)
    if isinstance(payload, str):
        return Keypair.from_base58_string(payload.strip())
    raise ValueError(f"Unsupported keypair format: {path}")


class KeypairSigner:
    """Signs with a local keypair and broadcasts through the RPC connection."""

    def __init__(self, keypair: Keypair, connection: RpcConnection, *, skip_preflight: bool = False) -> None:
        self.keypair = keypair
        self.connection = connection
        self.skip_preflight = skip_preflight

    async def sign_and_send_transaction(self, tx: VersionedTransaction) -> str:
        if tx.message.account_keys[0] != self.keypair.pubkey():
            raise SignerRejected("Transaction fee payer does not match the loaded keypair")
        signed = VersionedTransaction(tx.message, [self.keypair])
        return await self.connection.send_raw_transaction(signed, skip_preflight=self.skip_preflight)


class KeypairWallet:
    """WalletCapability backed by a keypair file. Always connected once loaded."""

    def __init__(self, keypair: Keypair, connection: RpcConnection, *, skip_preflight: bool = False) -> None:
        self.keypair = keypair
        self.connection = connection
        self._signer = KeypairSigner(keypair, connection, skip_preflight=skip_preflight)

    @classmethod
    def from_file(cls, path: Path, connection: RpcConnection, **kwargs: bool) -> KeypairWallet:
        keypair = load_keypair_any(path)
        log.info("loaded wallet %s from %s", keypair.pubkey(), path)
        return cls(keypair, connection, **kwargs)

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    def is_connected(self) -> bool:
        return True

    async def get_connection(self) -> RpcConnection:
        return self.connection

    async def get_signer(self) -> KeypairSigner:
        return self._signer
