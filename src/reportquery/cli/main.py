"""CLI entrypoint for schema discovery, query compilation and execution."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from reportquery.catalog.standard_fields import standard_catalog
from reportquery.config.models import EngineConfig
from reportquery.ledger.models import HistoryFilters, Page
from reportquery.ledger.states import ExecutionStatus
from reportquery.query.model import serialize
from reportquery.query.validator import QueryValidator, ValidationLimits
from reportquery.services.credentials import load_credential_file
from reportquery.services.engine import ReportQueryService
from reportquery.services.errors import ProblemError, log_problem, problem
from reportquery.services.factory import build_service_from_config
from reportquery.sources import parse_source, require_source

LOG = logging.getLogger("reportquery.cli")

CommandHandler = Callable[..., int]
CREDENTIALS_ENV = "REPORTQUERY_CREDENTIALS"


# ---------------------------------------------------------------------------
# Argument parsing / logging setup
# ---------------------------------------------------------------------------


def _setup_logging(verbosity: int) -> None:
    """
    Configure logging based on -v/--verbose count.

    0 -> WARNING, 1 -> INFO, 2+ -> DEBUG.
    """
    if verbosity <= 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _add_credential_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument("--credential", required=True, help="Credential id to run with")


def _add_query_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--query",
        type=Path,
        required=True,
        help="JSON file holding the query request ('-' reads stdin)",
    )
    _add_credential_arg(p)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reportquery", description="Cross-source report query engine"
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity")
    parser.add_argument(
        "--credentials",
        type=Path,
        default=None,
        help=f"JSON credentials file (default: ${CREDENTIALS_ENV})",
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        default=None,
        help="DuckDB file for history and saved reports (default: $REPORTQUERY_DB_PATH)",
    )
    subparsers = parser.add_subparsers(dest="command")

    p_fields = subparsers.add_parser("fields", help="List the fields a source exposes")
    p_fields.add_argument("source", help="directory, cloud_directory or cloud_suite")
    _add_credential_arg(p_fields)
    p_fields.add_argument("--refresh", action="store_true", help="Force rediscovery")
    p_fields.set_defaults(func=_cmd_fields)

    p_validate = subparsers.add_parser(
        "validate", help="Check a query against the standard fields, offline"
    )
    p_validate.add_argument(
        "--query", type=Path, required=True, help="JSON query file ('-' reads stdin)"
    )
    p_validate.set_defaults(func=_cmd_validate)

    p_compile = subparsers.add_parser("compile", help="Validate a query and show its native form")
    _add_query_args(p_compile)
    p_compile.set_defaults(func=_cmd_compile)

    p_run = subparsers.add_parser("run", help="Execute a query and print the first page")
    _add_query_args(p_run)
    p_run.add_argument("--owner", default=os.environ.get("USER", "cli"), help="Owner id")
    p_run.add_argument("--timeout", type=float, default=None, help="Timeout in seconds")
    p_run.add_argument(
        "--allow-partial", action="store_true", help="Keep rows fetched before a timeout"
    )
    p_run.add_argument("--offset", type=int, default=0, help="First row to print")
    p_run.add_argument("--limit", type=int, default=None, help="Rows to print")
    p_run.set_defaults(func=_cmd_run)

    p_history = subparsers.add_parser("history", help="List recent executions")
    p_history.add_argument("--owner", default=None, help="Only this owner's executions")
    p_history.add_argument(
        "--status", choices=[s.value for s in ExecutionStatus], default=None, help="Status filter"
    )
    p_history.add_argument("--source", default=None, help="Source filter")
    p_history.add_argument("--offset", type=int, default=0)
    p_history.add_argument("--limit", type=int, default=50)
    p_history.set_defaults(func=_cmd_history)

    p_ping = subparsers.add_parser("test-connection", help="Check a credential's backend")
    p_ping.add_argument("source")
    _add_credential_arg(p_ping)
    p_ping.set_defaults(func=_cmd_test_connection)

    p_reports = subparsers.add_parser("reports", help="Saved report helpers")
    reports_sub = p_reports.add_subparsers(dest="subcommand", required=True)

    p_list = reports_sub.add_parser("list", help="List saved reports")
    p_list.add_argument("--owner", default=os.environ.get("USER", "cli"))
    p_list.add_argument("--favorites", action="store_true", help="Only favorites")
    p_list.set_defaults(func=_cmd_reports_list)

    p_save = reports_sub.add_parser("save", help="Validate and save a query as a report")
    _add_query_args(p_save)
    p_save.add_argument("--owner", default=os.environ.get("USER", "cli"))
    p_save.add_argument("--name", required=True)
    p_save.add_argument("--description", default="")
    p_save.set_defaults(func=_cmd_reports_save)

    p_exec = reports_sub.add_parser("run", help="Execute a saved report")
    p_exec.add_argument("report_id")
    _add_credential_arg(p_exec)
    p_exec.add_argument("--owner", default=os.environ.get("USER", "cli"))
    p_exec.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Parameter override (repeatable)",
    )
    p_exec.add_argument("--timeout", type=float, default=None)
    p_exec.add_argument("--limit", type=int, default=None)
    p_exec.set_defaults(func=_cmd_reports_run)

    p_delete = reports_sub.add_parser("delete", help="Delete a saved report")
    p_delete.add_argument("report_id")
    p_delete.add_argument("--owner", default=os.environ.get("USER", "cli"))
    p_delete.set_defaults(func=_cmd_reports_delete)

    return parser


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _read_query(path: Path) -> Any:
    text = sys.stdin.read() if str(path) == "-" else path.read_text(encoding="utf-8")
    return json.loads(text)


def _parse_params(pairs: Iterable[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            message = f"Parameter override must look like NAME=VALUE: {pair!r}"
            raise ValueError(message)
        params[name.strip()] = value
    return params


def _load_config(args: argparse.Namespace) -> EngineConfig:
    cfg = EngineConfig.from_env()
    if args.db_path is not None:
        cfg = cfg.model_copy(update={"db_path": args.db_path.expanduser().resolve()})
    return cfg


@contextmanager
def _service(args: argparse.Namespace) -> Iterator[ReportQueryService]:
    path = args.credentials or os.environ.get(CREDENTIALS_ENV)
    if not path:
        message = f"No credentials file given (--credentials or ${CREDENTIALS_ENV})"
        raise ValueError(message)
    service = build_service_from_config(_load_config(args), load_credential_file(Path(path)))
    service.init()
    try:
        yield service
    finally:
        service.shutdown()


def _wait_and_emit(
    service: ReportQueryService,
    execution_id: str,
    *,
    offset: int = 0,
    limit: int | None = None,
) -> int:
    record = service.wait_for_execution(execution_id)
    if record.status is not ExecutionStatus.COMPLETED:
        _emit({"execution": record.to_dict()})
        return 1
    page = service.get_results(execution_id, offset=offset, limit=limit)
    _emit({"execution": record.to_dict(), "results": page.to_dict()})
    return 0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_fields(args: argparse.Namespace) -> int:
    with _service(args) as service:
        if args.refresh:
            catalog = service.refresh_schema(args.source, args.credential)
        else:
            catalog = service.discover_schema(args.source, args.credential)
        _emit(catalog.to_dict())
    return 0


def _cmd_validate(args: argparse.Namespace) -> int:
    raw = _read_query(args.query)
    source = parse_source(raw.get("source")) if isinstance(raw, Mapping) else None
    if source is None:
        message = "Query must be a JSON object naming a known source"
        raise ValueError(message)
    validator = QueryValidator(ValidationLimits.from_config(_load_config(args)))
    report = validator.check(raw, standard_catalog(source))
    _emit(
        {
            "valid": report.ok,
            "violations": [v.to_dict() for v in report.violations],
            "warnings": list(report.warnings),
            "query": serialize(report.definition) if report.ok and report.definition else None,
        }
    )
    return 0 if report.ok else 1


def _cmd_compile(args: argparse.Namespace) -> int:
    with _service(args) as service:
        native = service.validate_and_compile(_read_query(args.query), args.credential)
        _emit(native.to_dict())
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    with _service(args) as service:
        record = service.execute_query(
            _read_query(args.query),
            owner_id=args.owner,
            credential_id=args.credential,
            timeout=args.timeout,
            allow_partial=args.allow_partial,
        )
        LOG.info("Submitted execution %s", record.id)
        return _wait_and_emit(service, record.id, offset=args.offset, limit=args.limit)


def _cmd_history(args: argparse.Namespace) -> int:
    filters = HistoryFilters(
        owner_id=args.owner,
        status=ExecutionStatus(args.status) if args.status else None,
        source=require_source(args.source) if args.source else None,
    )
    with _service(args) as service:
        records = service.list_history(filters, Page(offset=args.offset, limit=args.limit))
        _emit([record.to_dict() for record in records])
    return 0


def _cmd_test_connection(args: argparse.Namespace) -> int:
    with _service(args) as service:
        outcome = service.test_connection(args.source, args.credential)
        _emit(outcome)
    return 0 if outcome["ok"] else 1


def _cmd_reports_list(args: argparse.Namespace) -> int:
    with _service(args) as service:
        reports = service.reports.list(args.owner, favorites_only=args.favorites)
        _emit([report.to_dict() for report in reports])
    return 0


def _cmd_reports_save(args: argparse.Namespace) -> int:
    with _service(args) as service:
        report = service.create_report(
            owner_id=args.owner,
            name=args.name,
            raw_query=_read_query(args.query),
            credential_id=args.credential,
            description=args.description,
        )
        _emit(report.to_dict())
    return 0


def _cmd_reports_run(args: argparse.Namespace) -> int:
    params = _parse_params(args.param)
    with _service(args) as service:
        record = service.execute_report(
            args.report_id,
            owner_id=args.owner,
            credential_id=args.credential,
            parameters=params,
            timeout=args.timeout,
        )
        return _wait_and_emit(service, record.id, limit=args.limit)


def _cmd_reports_delete(args: argparse.Namespace) -> int:
    with _service(args) as service:
        service.reports.delete(args.report_id, args.owner)
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    """
    CLI entrypoint for the report query engine.

    Parameters
    ----------
    argv:
        Optional argument list (defaults to sys.argv).

    Returns
    -------
    int
        Exit code (0 on success).
    """
    parser = _make_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    _setup_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        func: CommandHandler = args.func
        return int(func(args))
    except ProblemError as exc:
        log_problem(LOG, exc.problem_detail)
        _emit(exc.problem_detail.to_dict())
        return 1
    except Exception as exc:  # noqa: BLE001 pragma: no cover - error path
        pd = problem(
            code="cli.failure",
            title="CLI command failed",
            detail=str(exc),
            extras={"command": args.command},
        )
        log_problem(LOG, pd)
        return 1


if __name__ == "__main__":
    sys.exit(main())
