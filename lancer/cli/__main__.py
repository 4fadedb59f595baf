"""
Lancer CLI - run and inspect the marketplace orchestration core.

Usage:
    lancer init-db
    lancer run
    lancer tick {requests,payments} [--json]
    lancer add-user WALLET [--role ROLE] [--name NAME]
    lancer add-worker WALLET --skill S [--skill S]... [--rating R] [--mcp-endpoint URL]
    lancer submit-request USER_ID TEXT
    lancer status JOB_ID [--json]
    lancer hire JOB_ID
    lancer approve JOB_ID BUYER_ID
    lancer cancel JOB_ID [--reason R]
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from lancer.config import Settings, get_settings
from lancer.logging_config import configure_logging
from lancer.orchestrator.runtime import Runtime
from lancer.protocols import LancerError

logger = logging.getLogger(__name__)


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def cmd_init_db(args, settings: Settings):
    """Create the ledger schema and seed platform config."""
    from lancer.storage.sqlite import SQLiteLedger

    ledger = SQLiteLedger(settings.db_path)
    print(f"Ledger ready at {ledger.db_path}")
    for key, value in sorted(ledger.get_platform_config().items()):
        print(f"  {key} = {value}")


def cmd_run(args, rt: Runtime):
    asyncio.run(rt.run())


def cmd_tick(args, rt: Runtime):
    reconciler = rt.requests if args.loop == "requests" else rt.payments
    if reconciler is None:
        raise LancerError(f"The {args.loop} loop is not configured")
    report = asyncio.run(reconciler.tick())
    if args.json:
        _print_json(report.to_dict())
    else:
        print(
            f"{args.loop}: {report.processed} processed, {report.failed} failed, "
            f"{report.skipped} skipped"
            + (f", {report.escalated} escalated" if report.escalated else "")
        )
        if report.error:
            print(f"  tick error: {report.error}")


def cmd_add_user(args, rt: Runtime):
    user = rt.ledger.create_user(args.wallet, role=args.role, display_name=args.name)
    print(f"User {user.id} ({user.role}) {user.wallet_address}")


def cmd_add_worker(args, rt: Runtime):
    worker = rt.ledger.register_worker(
        args.wallet,
        args.skill,
        rating=args.rating,
        mcp_endpoint=args.mcp_endpoint,
        display_name=args.name,
    )
    print(f"Worker user {worker.user_id}: skills {', '.join(worker.skills)}")


def cmd_submit_request(args, rt: Runtime):
    request = rt.ledger.submit_request(args.user_id, args.text)
    print(f"Request {request.id} submitted (pending)")


def cmd_status(args, rt: Runtime):
    job = rt.job_service.get_job(args.job_id)
    transitions = rt.job_service.get_transitions(args.job_id)
    if args.json:
        data = job.to_dict()
        data["transitions"] = [
            {
                "from": t.from_status,
                "to": t.to_status,
                "actor": t.actor,
                "note": t.note,
                "at": t.created_at,
            }
            for t in transitions
        ]
        _print_json(data)
        return

    print(f"Job {job.id}: {job.title}")
    print(f"  status:    {job.status}" + ("  [NEEDS REVIEW]" if job.needs_review else ""))
    print(f"  amount:    {job.amount_usdc} USDC")
    print(f"  reference: {job.reference_key}")
    print(f"  worker:    {job.worker_id if job.worker_id is not None else '-'}")
    if job.invoice_id:
        print(f"  invoice:   {job.invoice_id}")
    if job.escrow_object_id:
        print(f"  escrow:    {job.escrow_object_id} ({job.escrow_tx_digest})")
    if job.release_tx_digest:
        print(f"  released:  {job.release_tx_digest}")
    if job.review_note:
        print(f"  review:    {job.review_note}")
    for t in transitions:
        print(f"  {t.created_at}  {t.from_status or '-'} -> {t.to_status}  ({t.actor})")


def cmd_hire(args, rt: Runtime):
    invoice = asyncio.run(rt.settlement.hire(args.job_id))
    print(f"Invoice {invoice.invoice_id} for {invoice.amount} USDC")
    if invoice.payment_url:
        print(f"  pay at: {invoice.payment_url}")


def cmd_approve(args, rt: Runtime):
    job = asyncio.run(rt.settlement.approve_delivery(args.job_id, args.buyer_id))
    print(f"Job {job.id} is {job.status}")


def cmd_cancel(args, rt: Runtime):
    job = asyncio.run(rt.settlement.cancel_job(args.job_id, reason=args.reason))
    print(f"Job {job.id} is {job.status}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lancer",
        description="Marketplace orchestration: requests, payments, escrow",
    )
    parser.add_argument("--db", help="Ledger path (overrides LANCER_DB_PATH)", default=None)
    parser.add_argument("--log-level", default=None, help="Log level (overrides LANCER_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the ledger")
    subparsers.add_parser("run", help="Run both reconciliation loops until interrupted")

    p_tick = subparsers.add_parser("tick", help="Run a single tick of one loop")
    p_tick.add_argument("loop", choices=["requests", "payments"])
    p_tick.add_argument("--json", "-j", action="store_true")

    p_user = subparsers.add_parser("add-user", help="Register a buyer")
    p_user.add_argument("wallet", help="Wallet address")
    p_user.add_argument("--role", default="buyer", choices=["buyer", "agent"])
    p_user.add_argument("--name", help="Display name")

    p_worker = subparsers.add_parser("add-worker", help="Register an agent")
    p_worker.add_argument("wallet", help="Wallet address")
    p_worker.add_argument("--skill", "-s", action="append", required=True, help="Skill (repeatable, primary first)")
    p_worker.add_argument("--rating", type=float, default=0.0)
    p_worker.add_argument("--mcp-endpoint", help="Agent MCP URL")
    p_worker.add_argument("--name", help="Display name")

    p_request = subparsers.add_parser("submit-request", help="Submit a free-text request")
    p_request.add_argument("user_id", type=int)
    p_request.add_argument("text")

    p_status = subparsers.add_parser("status", help="Show a job and its history")
    p_status.add_argument("job_id", type=int)
    p_status.add_argument("--json", "-j", action="store_true")

    p_hire = subparsers.add_parser("hire", help="Invoice the buyer for a job")
    p_hire.add_argument("job_id", type=int)

    p_approve = subparsers.add_parser("approve", help="Approve a delivery and pay out")
    p_approve.add_argument("job_id", type=int)
    p_approve.add_argument("buyer_id", type=int)

    p_cancel = subparsers.add_parser("cancel", help="Cancel an unpaid or escrowed job")
    p_cancel.add_argument("job_id", type=int)
    p_cancel.add_argument("--reason", "-r")

    return parser


COMMANDS = {
    "run": cmd_run,
    "tick": cmd_tick,
    "add-user": cmd_add_user,
    "add-worker": cmd_add_worker,
    "submit-request": cmd_submit_request,
    "status": cmd_status,
    "hire": cmd_hire,
    "approve": cmd_approve,
    "cancel": cmd_cancel,
}


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)

    settings = get_settings()
    overrides = {}
    if args.db:
        overrides["db_path"] = args.db
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        settings = settings.model_copy(update=overrides)
    configure_logging(settings.log_level, settings.log_dir)

    try:
        if args.command == "init-db":
            cmd_init_db(args, settings)
            return
        rt = Runtime.from_settings(settings)
        COMMANDS[args.command](args, rt)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except LancerError as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
