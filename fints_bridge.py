#!/usr/bin/env python3
import argparse
import json
import logging
import warnings
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from fints.parser import FinTSParserWarning

from fints_backends import create_backend
from fints_config import BACKENDS, CFG_PATH, Config, get_pin
from fints_dispatch import OUTPUT_FORMATS, Options, Request, dispatch, run_batch, to_json
from fints_errors import ConfigurationError, FinTSBridgeError
from fints_records import DATE_RANGES


COMMANDS = {
    "balance": ("account", "getBalance"),
    "accounts": ("account", "listAccounts"),
    "account-info": ("account", "getAccountInfo"),
    "transactions": ("transaction", "getTransactions"),
    "export": ("transaction", "exportTransactions"),
    "users": ("user", "listUsers"),
    "sysid": ("user", "getSystemId"),
    "tan-methods": ("user", "getTanMethods"),
}


def pin_provider(args, cfg: Config):
    cache: dict[str, Optional[str]] = {}

    def provide() -> Optional[str]:
        if "pin" not in cache:
            cache["pin"] = get_pin(args, cfg)
        return cache["pin"]

    return provide


def backend_factory(args):
    provide = None

    def factory(cfg: Config):
        nonlocal provide
        if provide is None:
            provide = pin_provider(args, cfg)
        return create_backend(cfg, provide)

    return factory


def build_request(args) -> Request:
    resource, operation = COMMANDS[args.cmd]
    return Request(
        resource=resource,
        operation=operation,
        account_number=getattr(args, "account", None) or "",
        bank_code=getattr(args, "bank_code", None) or "",
        date_range=getattr(args, "range", None) or "last30Days",
        start_date=getattr(args, "start", None),
        end_date=getattr(args, "end", None),
        options=Options(
            simplify_output=not getattr(args, "verbose_output", False),
            include_raw_output=bool(getattr(args, "raw", False)),
            max_results=getattr(args, "max_results", 0) or 0,
            output_format=getattr(args, "output_format", None) or "csv",
        ),
    )


def print_transactions(rows, out_format: str, max_purpose: int) -> None:
    if out_format == "json":
        print(to_json(rows))
        return

    if out_format == "tsv":
        print("date\tamount\tcurrency\tremote_name\tremote_iban\tpurpose")
        for row in rows:
            print(
                f"{row['date']}\t{row['amount']}\t{row['currency']}\t{row['remote_name']}\t"
                f"{row['remote_iban']}\t{row['purpose']}"
            )
        return

    date_w = 10
    amounts = [f"{r['amount']} {r['currency']}" for r in rows]
    amount_w = max(12, max((len(a) for a in amounts), default=12))
    cp_w = max(16, min(40, max((len(r["remote_name"]) for r in rows), default=16)))
    iban_w = max(12, min(34, max((len(r["remote_iban"]) for r in rows), default=12)))
    header = (
        f"{'Date':<{date_w}}  {'Amount':>{amount_w}}  {'Counterparty':<{cp_w}}  "
        f"{'IBAN':<{iban_w}}  Purpose"
    )
    print(header)
    print("-" * len(header))
    for row, amount in zip(rows, amounts):
        purpose = row["purpose"]
        if max_purpose > 0 and len(purpose) > max_purpose:
            purpose = purpose[: max_purpose - 3] + "..."
        cp = row["remote_name"][:cp_w]
        iban = row["remote_iban"][:iban_w]
        print(
            f"{row['date'][:date_w]:<{date_w}}  {amount:>{amount_w}}  "
            f"{cp:<{cp_w}}  {iban:<{iban_w}}  {purpose}"
        )


def cmd_operation(args, cfg: Config) -> int:
    result = dispatch(build_request(args), cfg, backend_factory=backend_factory(args))

    if args.cmd == "transactions" and args.format != "json":
        print_transactions(result["transactions"], args.format, args.max_purpose)
        print(f"\nTransactions: {result['count']}")
        return 0

    if args.cmd == "export" and result.get("format") == "csv":
        if args.out:
            Path(args.out).write_text(result["csv_data"], encoding="utf-8")
            print(f"Exported {result['count']} transactions to {args.out}")
        else:
            print(result["csv_data"], end="")
        return 0

    print(to_json(result))
    return 0


def cmd_batch(args, cfg: Config) -> int:
    try:
        data = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read batch file {args.file}: {exc}") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Invalid JSON in batch file {args.file}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("items", [])
    if not isinstance(data, list):
        raise ConfigurationError(f"Batch file {args.file} must hold a list of requests")
    requests = [Request.from_dict(item) for item in data]
    results = run_batch(
        requests,
        cfg,
        continue_on_fail=args.continue_on_fail,
        backend_factory=backend_factory(args),
    )
    print(to_json(results))
    return 0


def cmd_init(args, cfg: Config) -> int:
    backend = getattr(args, "init_backend", None) or getattr(args, "backend", None)
    if backend:
        cfg.backend = backend
    for name in (
        "blz",
        "user_id",
        "customer_id",
        "user_name",
        "server",
        "product_id",
        "hbci_version",
        "tan_method_id",
        "tan_medium_name",
        "python_path",
        "docker_image",
        "aqbanking_dir",
        "keychain_service",
        "keychain_account",
    ):
        value = getattr(args, name, None)
        if value is not None:
            setattr(cfg, name, value)
    if args.interactive:
        cfg.non_interactive = False
    if args.non_interactive:
        cfg.non_interactive = True
    if args.debug_tools is not None:
        cfg.enable_debug_logging = args.debug_tools == "on"
    cfg.save()
    print(f"Config saved at: {CFG_PATH}")
    print(json.dumps(asdict(cfg), indent=2, ensure_ascii=False))
    return 0


def cmd_show_config(_args, cfg: Config) -> int:
    print(json.dumps(asdict(cfg), indent=2, ensure_ascii=False))
    return 0


def _add_pin_args(p) -> None:
    p.add_argument("--keychain-service", default=None, help="Override keychain service")
    p.add_argument("--keychain-account", default=None, help="Override keychain account")
    p.add_argument("--no-keychain", action="store_true", help="Do not read PIN from Keychain")


def _add_output_args(p) -> None:
    p.add_argument("--raw", action="store_true", help="Include raw backend output")
    p.add_argument("--verbose-output", action="store_true", help="Add backend/resource/operation metadata")


def _add_account_args(p) -> None:
    p.add_argument("--account", default="", help="Account number or IBAN")
    p.add_argument("--bank-code", default=None, help="Bank code (BLZ), only needed with an account number")


def _add_range_args(p) -> None:
    p.add_argument("--range", choices=DATE_RANGES, default="last30Days", help="Date range")
    p.add_argument("--start", default=None, help="Start date for --range custom (YYYY-MM-DD)")
    p.add_argument("--end", default=None, help="End date for --range custom (YYYY-MM-DD)")
    p.add_argument("--max-results", type=int, default=0, help="Maximum number of transactions (0 = no limit)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fints-bridge",
        description="Balances and transactions from German banks via FinTS/HBCI backends.",
        epilog=(
            "Quickstart:\n"
            "  fints-bridge init --blz 37040044 --user-id ME --server https://fints.example.de/fints\n"
            "  fints-bridge balance --account DE89370400440532013000\n"
            "  fints-bridge transactions --account DE89370400440532013000 --range last90Days\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs (only when needed)")
    parser.add_argument("--backend", choices=BACKENDS, default=None, help="Override configured backend")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="Set config directly", description="Set configuration values.")
    p_init.add_argument("--backend", dest="init_backend", choices=BACKENDS, default=None, help="Default backend")
    p_init.add_argument("--blz", default=None, help="Bank code")
    p_init.add_argument("--user-id", default=None, help="FinTS/HBCI user ID")
    p_init.add_argument("--customer-id", default=None, help="Optional, if required by bank")
    p_init.add_argument("--user-name", default=None, help="Human readable user name")
    p_init.add_argument("--server", default=None, help="FinTS server URL")
    p_init.add_argument("--product-id", default=None, help="Registered FinTS product ID")
    p_init.add_argument("--hbci-version", choices=["300", "410", "220"], default=None)
    p_init.add_argument("--tan-method-id", default=None, help="TAN method ID, e.g. 921")
    p_init.add_argument("--tan-medium-name", default=None, help="Registered TAN medium name")
    p_init.add_argument("--python-path", default=None, help="Interpreter for the python backend")
    p_init.add_argument("--docker-image", default=None, help="Image for the docker backend")
    p_init.add_argument("--aqbanking-dir", default=None, help="Host AqBanking config dir for docker")
    p_init.add_argument("--keychain-service", default=None, help="macOS Keychain service name")
    p_init.add_argument("--keychain-account", default=None, help="macOS Keychain account name")
    mode = p_init.add_mutually_exclusive_group()
    mode.add_argument("--interactive", action="store_true", help="Pipe the PIN to the AqBanking tools")
    mode.add_argument("--non-interactive", action="store_true", help="Rely on an AqBanking PIN file")
    p_init.add_argument("--debug-tools", choices=["on", "off"], default=None, help="AqBanking debug logging")

    sub.add_parser("show-config", help="Print config")

    p_bal = sub.add_parser("balance", help="Account balance")
    _add_account_args(p_bal)
    _add_output_args(p_bal)
    _add_pin_args(p_bal)

    p_acc = sub.add_parser("accounts", help="List accounts")
    _add_output_args(p_acc)
    _add_pin_args(p_acc)

    p_info = sub.add_parser("account-info", help="Details of one account")
    _add_account_args(p_info)
    _add_output_args(p_info)
    _add_pin_args(p_info)

    p_tx = sub.add_parser("transactions", help="Fetch transactions")
    _add_account_args(p_tx)
    _add_range_args(p_tx)
    p_tx.add_argument("--format", choices=["pretty", "tsv", "json"], default="pretty", help="Output format")
    p_tx.add_argument("--max-purpose", type=int, default=110, help="Max purpose text length (pretty)")
    _add_output_args(p_tx)
    _add_pin_args(p_tx)

    p_exp = sub.add_parser("export", help="Export transactions as CSV or JSON")
    _add_account_args(p_exp)
    _add_range_args(p_exp)
    p_exp.add_argument("--output-format", choices=OUTPUT_FORMATS, default="csv")
    p_exp.add_argument("--out", default=None, help="Write CSV to this file instead of stdout")
    _add_output_args(p_exp)
    _add_pin_args(p_exp)

    for name, help_text in (
        ("users", "List configured users"),
        ("sysid", "Fetch system ID from the bank"),
        ("tan-methods", "List available TAN methods"),
    ):
        p = sub.add_parser(name, help=help_text)
        _add_output_args(p)
        _add_pin_args(p)

    p_batch = sub.add_parser(
        "batch",
        help="Run many requests from a JSON file",
        description="Runs a JSON list of {resource, operation, ...} requests in order.",
    )
    p_batch.add_argument("--file", required=True, help="JSON file with a list of requests")
    p_batch.add_argument("--continue-on-fail", action="store_true", help="Turn failures into error records")
    _add_pin_args(p_batch)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.debug:
        logging.basicConfig(level=logging.DEBUG)
        warnings.simplefilter("default", FinTSParserWarning)
    else:
        logging.basicConfig(level=logging.CRITICAL)
        logging.getLogger("fints").setLevel(logging.CRITICAL)
        warnings.filterwarnings("ignore", category=FinTSParserWarning)

    cfg = Config.load()
    if args.cmd == "init":
        return cmd_init(args, cfg)
    if getattr(args, "backend", None):
        cfg.backend = args.backend
    try:
        if args.cmd == "show-config":
            return cmd_show_config(args, cfg)
        if args.cmd == "batch":
            return cmd_batch(args, cfg)
        if args.cmd in COMMANDS:
            return cmd_operation(args, cfg)
    except FinTSBridgeError as exc:
        raise SystemExit(str(exc)) from exc
    raise SystemExit("Unknown command")


if __name__ == "__main__":
    raise SystemExit(main())
