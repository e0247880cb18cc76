"""Podium CLI — command-line interface for the settlement engine.

Usage:
    podium status [--round ROUND_ID]
    podium create-round --id R-1 --onchain-id 0x... --pool 100 --questions 10
    podium add-entry --round R-1 --recipient 0x... --paid 5 --score 0
    podium score --entry ENTRY_ID --score 7
    podium start --round R-1
    podium end --round R-1
    podium finalize --round R-1
    podium settle --round R-1
    podium proof --round R-1 --recipient 0x...
    podium verify --root 0x... --onchain-id 0x... --recipient 0x... --amount 60000000 --proof 0x..,0x..
    podium serve --port 8000

State persists between invocations only when PODIUM_DATABASE_URL is set.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from pathlib import Path

from podium.config import Settings
from podium.engine.state_machine import LifecycleAction
from podium.errors import PodiumError, ValidationError
from podium.log import configure_logging
from podium.payout.prizes import parse_payout_table
from podium.service import ServiceResult, SettlementService


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env(args.env_file)
    if args.database_url:
        settings = replace(settings, database_url=args.database_url)
    return settings


def _make_service(args: argparse.Namespace) -> SettlementService:
    return SettlementService.from_settings(_settings(args))


def _decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValidationError(f"Not a decimal amount: {raw!r}") from exc


def _print_result(result: ServiceResult) -> None:
    print(json.dumps(result.data, indent=2, default=str))
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if args.round:
        print(json.dumps(service.round_status(args.round), indent=2))
        return 0
    rounds = service.ledger.list_rounds()
    print(json.dumps(
        [{"roundId": r.round_id, "phase": r.phase.value} for r in rounds],
        indent=2,
    ))
    return 0


def cmd_create_round(args: argparse.Namespace) -> int:
    service = _make_service(args)
    round_ = service.create_round(
        round_id=args.id,
        onchain_id=args.onchain_id,
        prize_pool=_decimal(args.pool),
        payout_table=parse_payout_table(args.payout) if args.payout else None,
        question_count=args.questions,
        ticket_tiers=tuple(_decimal(t) for t in args.tiers.split(",")) if args.tiers else (),
        actor_id="cli",
    )
    print(f"Created round: {round_.round_id} (phase: {round_.phase.value})")
    return 0


def cmd_add_entry(args: argparse.Namespace) -> int:
    service = _make_service(args)
    entry = service.add_entry(
        round_id=args.round,
        recipient=args.recipient,
        entry_id=args.id,
        score=args.score,
        paid_amount=_decimal(args.paid) if args.paid else None,
    )
    status = "paid" if entry.is_eligible else "unpaid"
    print(f"Added entry: {entry.entry_id} ({status})")
    return 0


def cmd_score(args: argparse.Namespace) -> int:
    service = _make_service(args)
    entry = service.record_score(args.entry, args.score)
    print(f"Entry {entry.entry_id} score: {entry.score}")
    return 0


def _lifecycle(action: LifecycleAction):
    def run(args: argparse.Namespace) -> int:
        service = _make_service(args)
        _print_result(service.dispatch(action, args.round, actor_id="cli"))
        return 0
    return run


def cmd_finalize(args: argparse.Namespace) -> int:
    service = _make_service(args)
    body = service.finalize(args.round, actor_id="cli")
    print(json.dumps(body, indent=2))
    if body.get("error"):
        print(f"Warning: publication failed: {body['error']}", file=sys.stderr)
    return 0


def cmd_proof(args: argparse.Namespace) -> int:
    service = _make_service(args)
    print(json.dumps(service.proof(args.round, args.recipient).to_dict(), indent=2))
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    proof = [p.strip() for p in args.proof.split(",") if p.strip()] if args.proof else []
    valid = SettlementService.verify_claim(
        root=args.root,
        onchain_id=args.onchain_id,
        recipient=args.recipient,
        amount=args.amount,
        proof=proof,
    )
    print("VALID" if valid else "INVALID")
    return 0 if valid else 1


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from podium.api import create_app

    settings = _settings(args)
    app = create_app(SettlementService.from_settings(settings), settings)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="podium",
        description="Podium — round finalization and settlement engine CLI",
    )
    parser.add_argument("--env-file", type=Path, default=None, help="Path to a .env file")
    parser.add_argument("--database-url", help="SQLAlchemy URL (overrides PODIUM_DATABASE_URL)")
    sub = parser.add_subparsers(dest="command")

    # status
    p_status = sub.add_parser("status", help="List rounds or show one round")
    p_status.add_argument("--round", help="Round ID")

    # create-round
    p_create = sub.add_parser("create-round", help="Create a new round")
    p_create.add_argument("--id", required=True, help="Round ID")
    p_create.add_argument("--onchain-id", required=True, help="bytes32 settlement contract id")
    p_create.add_argument("--pool", required=True, help="Prize pool (Decimal)")
    p_create.add_argument("--payout", help="Payout table, e.g. 0.60,0.30,0.10")
    p_create.add_argument("--questions", type=int, default=0, help="Question count")
    p_create.add_argument("--tiers", help="Allowed ticket prices, comma separated")

    # add-entry
    p_entry = sub.add_parser("add-entry", help="Register a participant")
    p_entry.add_argument("--round", required=True, help="Round ID")
    p_entry.add_argument("--recipient", required=True, help="Payout address")
    p_entry.add_argument("--id", help="Entry ID (default: generated)")
    p_entry.add_argument("--score", type=int, default=0)
    p_entry.add_argument("--paid", help="Amount paid (marks the entry paid)")

    # score
    p_score = sub.add_parser("score", help="Set an entry's score")
    p_score.add_argument("--entry", required=True, help="Entry ID")
    p_score.add_argument("--score", type=int, required=True)

    # lifecycle and finalization
    for name, help_text in (
        ("start", "Move a round from OPEN to LIVE"),
        ("end", "Move a round from LIVE to ENDED"),
        ("settle", "Finalize, publish and mark SETTLED"),
        ("finalize", "Rank and allocate prizes (then publish if configured)"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--round", required=True, help="Round ID")

    # proof
    p_proof = sub.add_parser("proof", help="Print a winner's claim proof")
    p_proof.add_argument("--round", required=True, help="Round ID")
    p_proof.add_argument("--recipient", required=True, help="Winner address")

    # verify
    p_verify = sub.add_parser("verify", help="Verify a claim proof against a root")
    p_verify.add_argument("--root", required=True)
    p_verify.add_argument("--onchain-id", required=True)
    p_verify.add_argument("--recipient", required=True)
    p_verify.add_argument("--amount", type=int, required=True, help="Amount in base units")
    p_verify.add_argument("--proof", default="", help="Sibling hashes, comma separated")

    # serve
    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "create-round": cmd_create_round,
        "add-entry": cmd_add_entry,
        "score": cmd_score,
        "start": _lifecycle(LifecycleAction.START),
        "end": _lifecycle(LifecycleAction.END),
        "settle": _lifecycle(LifecycleAction.SETTLE),
        "finalize": cmd_finalize,
        "proof": cmd_proof,
        "verify": cmd_verify,
        "serve": cmd_serve,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        configure_logging(Settings.from_env(args.env_file).log_level)
        return handler(args)
    except PodiumError as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
