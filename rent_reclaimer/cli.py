"""Command line entry: discover token accounts for one wallet and reclaim their rent.

Defaults to DRY RUN. Use --execute to broadcast transactions.

Env:
  - WALLET_KEYPAIR_PATH (keypair .json / .json.gz)
  - FEE_WALLET (platform fee / wagering destination)
  - HELIUS_API_KEY (optional)
  - RPC_URL or SOLANA_URL (optional override)
  - JUPITER_SWAP_API, JUPITER_TOKEN_API, JUPITER_PRICE_API (optional)
  - RECLAIM_BATCH_DELAY_SECONDS (optional)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Sequence

from dotenv import load_dotenv

from .config import Settings, parse_pubkey, require_env_var
from .constants import PLATFORM_FEE_FRACTION, RENT_RECLAIM_LAMPORTS, fmt_sol
from .discovery import DEFAULT_DISCOVERY_TIMEOUT_SECONDS, discover_candidates
from .errors import ConfigurationError, DiscoveryTimeout, RpcError, SessionFatalError
from .jupiter import JupiterClient
from .logging import configure_logging
from .metadata import TokenMetadataService, TtlCache
from .models import CandidateAccount, SessionMode, SessionResult
from .orchestrator import BatchOrchestrator
from .planner import InstructionPlanner
from .rpc import RpcConnection
from .submission import SubmissionEngine
from .verification import DepositVerifier
from .wallet import KeypairWallet

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="rent-reclaimer",
        description="Close dust token accounts of one wallet and reclaim their rent.",
    )
    ap.add_argument("--keypair", default="", help="Wallet keypair path (default: env WALLET_KEYPAIR_PATH)")
    ap.add_argument("--rpc-url", default="", help="RPC URL override (default: RPC_URL/SOLANA_URL/HELIUS_API_KEY)")
    ap.add_argument(
        "--mode",
        choices=[m.value for m in SessionMode],
        default=SessionMode.DIRECT.value,
        help="direct: fee to the fee wallet, rest stays; wager: full value to the fee wallet (default: direct)",
    )
    ap.add_argument("--fee-wallet", default="", help="Fee / wagering destination (default: env FEE_WALLET)")
    ap.add_argument("--execute", action="store_true", help="Broadcast transactions (default: dry run)")
    ap.add_argument(
        "--batch-delay",
        type=float,
        default=None,
        help="Seconds between batches (default: env RECLAIM_BATCH_DELAY_SECONDS or 8)",
    )
    ap.add_argument(
        "--discovery-timeout",
        type=float,
        default=DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
        help=f"Token account discovery timeout in seconds (default: {DEFAULT_DISCOVERY_TIMEOUT_SECONDS:g})",
    )
    ap.add_argument(
        "--accounts",
        nargs="*",
        default=None,
        help="Only process these token account addresses",
    )
    ap.add_argument("--verify", action="store_true", help="Verify each landed batch against chain data")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return ap


def print_scan_report(candidates: Sequence[CandidateAccount]) -> None:
    empty = [c for c in candidates if c.is_empty and not c.is_frozen]
    valued = [c for c in candidates if not c.is_empty and not c.is_frozen]
    frozen = [c for c in candidates if c.is_frozen]
    closable = len(empty) + len(valued)
    print("-" * 80)
    print("SCAN REPORT")
    print(f"Empty token accounts:          {len(empty)}")
    print(f"Token accounts with balance:   {len(valued)}")
    print(f"Frozen (skipped):              {len(frozen)}")
    print("=" * 30)
    print(f"MAX RECLAIMABLE RENT:          {fmt_sol(closable * RENT_RECLAIM_LAMPORTS)} SOL")


def print_result(result: SessionResult) -> None:
    print("-" * 80)
    print(result.message)
    print(f"Status:            {result.status.value}")
    print(f"Accounts closed:   {result.closed_count}")
    print(f"Swapped, not closed: {result.converted_not_closed}")
    print(f"Reclaimed:         {fmt_sol(result.total_reclaimed_lamports)} SOL")
    print(f"Platform fee:      {fmt_sol(result.fee_lamports)} SOL")
    for sig in result.signatures:
        print(f"  sig: {sig}")
    if result.skipped_accounts:
        print(f"Skipped: {', '.join(result.skipped_accounts)}")


def _progress(percent: int, message: str) -> None:
    print(f"[{percent:3d}%] {message}")


async def run_session(args: argparse.Namespace, settings: Settings, keypair_path: Path, fee_wallet: str) -> int:
    mode = SessionMode(args.mode)
    destination = parse_pubkey(fee_wallet, name="fee wallet")
    batch_delay = settings.batch_delay_seconds if args.batch_delay is None else max(args.batch_delay, 0.0)

    async with RpcConnection(args.rpc_url.strip() or settings.rpc_url) as connection:
        try:
            wallet = KeypairWallet.from_file(keypair_path, connection)
        except (OSError, ValueError) as exc:
            print(f"ERROR: failed to load keypair {keypair_path}: {exc}")
            return 2
        print(f"RPC: {connection.rpc_url}")
        print(f"Wallet: {wallet.pubkey} ({keypair_path})")
        print(f"Destination: {destination} (mode: {mode.value})")
        print(f"Mode: {'EXECUTE' if args.execute else 'DRY RUN'}")

        try:
            candidates = await discover_candidates(connection, wallet.pubkey, timeout=args.discovery_timeout)
        except (DiscoveryTimeout, RpcError) as exc:
            print(f"ERROR: token account discovery failed: {exc}")
            return 1

        if args.accounts:
            wanted = set(args.accounts)
            candidates = [c for c in candidates if str(c.address) in wanted]
        print_scan_report(candidates)

        if not args.execute:
            print("DRY RUN: not broadcasting any transactions.")
            for c in candidates[:25]:
                print(f"account={c.address} mint={c.mint} amount={c.ui_amount} frozen={c.is_frozen}")
            if len(candidates) > 25:
                print(f"... ({len(candidates) - 25} more)")
            return 0

        async with JupiterClient(swap_api=settings.swap_api) as jupiter:
            metadata = TokenMetadataService(TtlCache(), token_api=settings.token_api, price_api=settings.price_api)
            try:
                planner = InstructionPlanner(wallet.pubkey, jupiter, jupiter, metadata=metadata)
                orchestrator = BatchOrchestrator(
                    planner,
                    SubmissionEngine(),
                    wallet,
                    mode=mode,
                    destination=destination,
                    fee_fraction=PLATFORM_FEE_FRACTION,
                    batch_delay=batch_delay,
                    verifier=DepositVerifier(connection, destination) if args.verify else None,
                    progress=_progress,
                )
                try:
                    result = await orchestrator.run(candidates)
                except SessionFatalError as exc:
                    print(f"ERROR: {exc}")
                    return 1
            finally:
                await metadata.aclose()

    print_result(result)
    return 0 if result.success else 1


def main(argv: List[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = Settings.from_environment()
        # Flags win; otherwise the environment must provide them.
        keypair = (args.keypair or "").strip() or require_env_var("WALLET_KEYPAIR_PATH")
        fee_wallet = (args.fee_wallet or "").strip() or require_env_var("FEE_WALLET")
    except ConfigurationError as exc:
        print(f"ERROR: {exc}")
        return 2

    keypair_path = Path(keypair).expanduser().resolve()
    if not keypair_path.exists():
        print(f"ERROR: wallet keypair not found: {keypair_path}")
        return 2

    try:
        return asyncio.run(run_session(args, settings, keypair_path, fee_wallet))
    except ConfigurationError as exc:
        print(f"ERROR: {exc}")
        return 2
