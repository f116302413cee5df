"""CLI entry point for the settlement and reconciliation engine."""

import argparse
import json
import logging
from pathlib import Path

from rsf.api import create_app, default_gateway
from rsf.config.loader import (
    get_config_value,
    load_config,
    load_participants,
    set_config_value,
    snapshot_config,
)
from rsf.config.schema import RsfConfig
from rsf.gateway.signing import generate_keypair
from rsf.models.outcome import Outcome
from rsf.models.protocol import Action, Direction, MiscFiling
from rsf.models.settlement import SettlementStatus
from rsf.recon.lifecycle import ReconLifecycle
from rsf.settle.lifecycle import SettlementLifecycle
from rsf.storage import (
    audit_repo,
    exchange_repo,
    participant_repo,
    settlement_repo,
    state_repo,
)
from rsf.storage.database import connect, run_migrations

DEFAULT_CONFIG = "ops/configs/default.yaml"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="rsf",
        description="Settlement and reconciliation engine",
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG, help="Config YAML path"
    )
    parser.add_argument("--db", default=None, help="SQLite DB path (overrides config)")

    sub = parser.add_subparsers(dest="command")

    # participants load / list
    part_p = sub.add_parser("participants", help="Participant profiles")
    part_sub = part_p.add_subparsers(dest="participants_command")
    load_p = part_sub.add_parser("load", help="Load profiles from YAML")
    load_p.add_argument("path")
    part_sub.add_parser("list", help="List profiles")

    # prepare / settle / void
    prep_p = sub.add_parser("prepare", help="Prepare settlements for completed orders")
    prep_p.add_argument("participant_id")
    prep_p.add_argument("order_ids", nargs="+")

    settle_p = sub.add_parser("settle", help="Send prepared settlements to the agency")
    settle_p.add_argument("participant_id")
    settle_p.add_argument("settlement_ids", nargs="+")

    nil_p = sub.add_parser("settle-nil", help="File a NIL settlement with the agency")
    nil_p.add_argument("participant_id")

    misc_p = sub.add_parser("settle-misc", help="File provider or self amounts not tied to orders")
    misc_p.add_argument("participant_id")
    misc_p.add_argument("--provider-id", default=None)
    misc_p.add_argument("--provider-amount", type=float, default=None)
    misc_p.add_argument("--self-amount", type=float, default=None)

    void_p = sub.add_parser("void", help="Delete an unsettled settlement and release its order")
    void_p.add_argument("participant_id")
    void_p.add_argument("order_id")

    # reports
    list_p = sub.add_parser("settlements", help="List settlements")
    list_p.add_argument("participant_id")
    list_p.add_argument("--status", default=None)
    list_p.add_argument("--limit", type=int, default=50)

    overdue_p = sub.add_parser("overdue", help="Open reconciliations past their due date")
    overdue_p.add_argument("participant_id", nargs="?")

    bd_p = sub.add_parser("breakdown", help="Reconciliation status counts")
    bd_p.add_argument("participant_id")

    # journals
    batches_p = sub.add_parser("batches", help="Sequential batch commits with failed steps")
    batches_p.add_argument("--batch", default=None, help="Show every step of one batch")

    ex_p = sub.add_parser("exchanges", help="Recent protocol messages of a participant")
    ex_p.add_argument("participant_id")
    ex_p.add_argument("--limit", type=int, default=20)

    one_p = sub.add_parser("exchange", help="One protocol message with its response")
    one_p.add_argument("transaction_id")
    one_p.add_argument("message_id")
    one_p.add_argument("action", choices=[a.value for a in Action])
    one_p.add_argument(
        "--direction", default=Direction.OUTBOUND.value, choices=[d.value for d in Direction]
    )

    hist_p = sub.add_parser("history", help="Recent operator commands")
    hist_p.add_argument("--limit", type=int, default=20)

    # config show / config set
    config_p = sub.add_parser("config", help="Config operations")
    config_sub = config_p.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Display current config")
    set_p = config_sub.add_parser("set", help="Set a config value")
    set_p.add_argument("keyvalue", help="key=value to set")

    sub.add_parser("keygen", help="Generate an Ed25519 signing key pair")

    serve_p = sub.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8777)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.config) if Path(args.config).exists() else RsfConfig()
    db_path = args.db or config.storage.db_path

    if args.command == "participants":
        return _cmd_participants(db_path, args)
    elif args.command == "prepare":
        return _cmd_prepare(config, db_path, args)
    elif args.command == "settle":
        return _cmd_settle(config, db_path, args)
    elif args.command in ("settle-nil", "settle-misc"):
        return _cmd_filing(config, db_path, args)
    elif args.command == "void":
        return _cmd_void(config, db_path, args)
    elif args.command == "settlements":
        return _cmd_settlements(db_path, args)
    elif args.command == "overdue":
        return _cmd_overdue(config, db_path, args)
    elif args.command == "breakdown":
        return _cmd_breakdown(config, db_path, args)
    elif args.command == "batches":
        return _cmd_batches(db_path, args)
    elif args.command == "exchanges":
        return _cmd_exchanges(db_path, args)
    elif args.command == "exchange":
        return _cmd_exchange(db_path, args)
    elif args.command == "history":
        return _cmd_history(db_path, args)
    elif args.command == "config":
        return _cmd_config(config, db_path, args)
    elif args.command == "keygen":
        return _cmd_keygen()
    elif args.command == "serve":
        return _cmd_serve(config, db_path, args)
    else:
        parser.print_help()
        return 1


def _open(db_path: str):
    conn = connect(db_path)
    run_migrations(conn)
    return conn


def _print_outcome(outcome: Outcome) -> int:
    if outcome.ok:
        print(f"OK: {len(outcome.order_ids)} orders")
        for sid in outcome.settlement_ids:
            print(f"  settlement {sid}")
        return 0
    for f in outcome.failures:
        where = f" [{f.order_id}]" if f.order_id else ""
        print(f"FAILED {f.code}{where}: {f.detail}")
    return 1


def _cmd_participants(db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        if args.participants_command == "load":
            profiles = load_participants(args.path)
            for p in profiles:
                participant_repo.save_participant(conn, p)
            state_repo.log_operator_command(
                conn, "participants-load", args=args.path, result=f"{len(profiles)} profiles"
            )
            print(f"Loaded {len(profiles)} participants")
            return 0
        elif args.participants_command == "list":
            for p in participant_repo.list_participants(conn):
                print(f"{p.participant_id}: {p.role} {p.subscriber_id} ({p.subscriber_url})")
            return 0
        print("Use: participants load PATH | participants list")
        return 1
    finally:
        conn.close()


def _cmd_prepare(config, db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        outcome = SettlementLifecycle(conn, config).prepare(args.participant_id, args.order_ids)
        return _print_outcome(outcome)
    finally:
        conn.close()


def _cmd_settle(config, db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        lifecycle = SettlementLifecycle(conn, config, default_gateway(config))
        return _print_outcome(lifecycle.trigger(args.participant_id, args.settlement_ids))
    finally:
        conn.close()


def _cmd_filing(config, db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        lifecycle = SettlementLifecycle(conn, config, default_gateway(config))
        if args.command == "settle-nil":
            outcome = lifecycle.trigger_nil(args.participant_id)
        else:
            filing = MiscFiling(args.provider_id, args.provider_amount, args.self_amount)
            outcome = lifecycle.trigger_misc(args.participant_id, filing)
        if outcome.ok:
            print(f"OK: filing {outcome.transaction_id} acknowledged")
            return 0
        return _print_outcome(outcome)
    finally:
        conn.close()


def _cmd_void(config, db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        outcome = SettlementLifecycle(conn, config).void(args.participant_id, args.order_id)
        return _print_outcome(outcome)
    finally:
        conn.close()


def _cmd_settlements(db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        status = SettlementStatus(args.status.upper()) if args.status else None
        rows = settlement_repo.list_settlements(
            conn, args.participant_id, status=status, limit=args.limit
        )
        print(f"Settlements: {len(rows)}")
        for s in rows:
            recon = s.recon.recon_status or "-"
            print(
                f"  {s.order_id} {s.status} recon={recon} "
                f"inter_np={s.inter_np_settlement:.2f} collector={s.collector_settlement:.2f}"
            )
        return 0
    finally:
        conn.close()


def _cmd_overdue(config, db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        rows = ReconLifecycle(conn, config).overdue(args.participant_id)
        print(f"Overdue reconciliations: {len(rows)}")
        for s in rows:
            print(f"  {s.participant_id}/{s.order_id} {s.recon.recon_status} due {s.due_date}")
        return 0
    finally:
        conn.close()


def _cmd_breakdown(config, db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        counts = ReconLifecycle(conn, config).status_breakdown(args.participant_id)
        for status, n in sorted(counts.items()):
            print(f"{status}: {n}")
        return 0
    finally:
        conn.close()


def _cmd_batches(db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        batch_ids = [args.batch] if args.batch else audit_repo.get_incomplete_batches(conn)
        if not args.batch:
            print(f"Incomplete batches: {len(batch_ids)}")
        for batch_id in batch_ids:
            steps = audit_repo.get_batch_steps(conn, batch_id)
            if not steps:
                print(f"No journal entries for {batch_id}")
                return 1
            print(f"{batch_id} ({steps[0]['action']}, {steps[0]['participant_id']})")
            for step in steps:
                detail = f" {step['detail']}" if step["detail"] else ""
                print(
                    f"  {step['order_id']} {step['from_status'] or '-'} -> "
                    f"{step['to_status'] or '-'} {step['result']}{detail}"
                )
        return 0
    finally:
        conn.close()


def _cmd_exchanges(db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        rows = exchange_repo.list_exchanges(conn, args.participant_id, limit=args.limit)
        print(f"Exchanges: {len(rows)}")
        for row in rows:
            status = row["status_code"] if row["status_code"] is not None else "-"
            print(
                f"  {row['created_at']} {row['direction']} {row['action']} "
                f"{row['transaction_id']}/{row['message_id']} status={status}"
            )
        return 0
    finally:
        conn.close()


def _cmd_exchange(db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        row = exchange_repo.get_exchange(
            conn, args.transaction_id, args.message_id, Action(args.action), Direction(args.direction)
        )
        if row is None:
            print("No such message")
            return 1
        print(json.dumps(
            {"payload": row["payload"], "response": row["response"], "status_code": row["status_code"]},
            indent=2,
        ))
        return 0
    finally:
        conn.close()


def _cmd_history(db_path: str, args) -> int:
    conn = _open(db_path)
    try:
        for cmd in state_repo.get_recent_operator_commands(conn, limit=args.limit):
            print(f"{cmd['executed_at']} {cmd['command']} {cmd['args']} -> {cmd['result']}")
        return 0
    finally:
        conn.close()


def _cmd_config(config, db_path: str, args) -> int:
    if args.config_command == "show":
        print(config.model_dump_json(indent=2, exclude={"signing": {"private_key"}}))
        conn = _open(db_path)
        try:
            print(f"Snapshot: {snapshot_config(config, conn)}")
        finally:
            conn.close()
        return 0
    elif args.config_command == "set":
        kv = args.keyvalue
        if "=" not in kv:
            print("Error: use key=value format")
            return 1
        key, value = kv.split("=", 1)
        try:
            new_config = set_config_value(config, key.strip(), value.strip())
            print(f"Set {key} = {get_config_value(new_config, key.strip())}")
            return 0
        except Exception as e:
            print(f"Error: {e}")
            return 1
    else:
        print("Use: config show | config set key=value")
        return 1


def _cmd_keygen() -> int:
    private_key, public_key = generate_keypair()
    print(json.dumps({"private_key": private_key, "public_key": public_key}, indent=2))
    return 0


def _cmd_serve(config, db_path: str, args) -> int:
    import uvicorn

    uvicorn.run(create_app(config, db_path), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
