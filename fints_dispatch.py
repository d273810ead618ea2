import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Optional, Sequence

from fints_backends import Backend, create_backend
from fints_config import Config
from fints_errors import ConfigurationError, FinTSBridgeError
from fints_records import match_account, now_iso, resolve_date_range, transactions_to_csv


logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("csv", "json")
ACCOUNT_REQUIRED = {"getBalance", "getTransactions", "exportTransactions", "getAccountInfo"}

BackendFactory = Callable[[Config], Backend]


def _pick(data: dict, *keys, default=None):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


TRUE_WORDS = {"true", "1", "yes", "on"}
FALSE_WORDS = {"false", "0", "no", "off", ""}


def _flag(value, name: str) -> bool:
    if isinstance(value, str):
        word = value.strip().lower()
        if word in TRUE_WORDS:
            return True
        if word in FALSE_WORDS:
            return False
        raise ConfigurationError(f"Invalid {name}: {value!r}")
    return bool(value)


@dataclass
class Options:
    simplify_output: bool = True
    include_raw_output: bool = False
    max_results: int = 0
    output_format: str = "csv"

    @staticmethod
    def from_dict(data: Optional[dict]) -> "Options":
        data = data or {}
        try:
            max_results = int(_pick(data, "max_results", "maxResults", default=0) or 0)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid max_results: {data!r}") from exc
        return Options(
            simplify_output=_flag(
                _pick(data, "simplify_output", "simplifyOutput", default=True), "simplify_output"
            ),
            include_raw_output=_flag(
                _pick(data, "include_raw_output", "includeRawOutput", default=False), "include_raw_output"
            ),
            max_results=max_results,
            output_format=str(_pick(data, "output_format", "outputFormat", default="csv")),
        )


@dataclass
class Request:
    resource: str
    operation: str
    account_number: str = ""
    bank_code: str = ""
    date_range: str = "last30Days"
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    options: Options = field(default_factory=Options)

    @staticmethod
    def from_dict(data: dict) -> "Request":
        if not isinstance(data, dict):
            raise ConfigurationError(f"Batch item must be an object, got: {data!r}")
        return Request(
            resource=str(data.get("resource") or ""),
            operation=str(data.get("operation") or ""),
            account_number=str(_pick(data, "account_number", "accountNumber", default="")),
            bank_code=str(_pick(data, "bank_code", "bankCode", default="")),
            date_range=str(_pick(data, "date_range", "dateRange", default="last30Days")),
            start_date=_pick(data, "start_date", "startDate"),
            end_date=_pick(data, "end_date", "endDate"),
            options=Options.from_dict(_pick(data, "options", "additionalOptions")),
        )


def _shape(data: dict, request: Request, backend: Backend) -> dict:
    if not request.options.include_raw_output:
        data.pop("raw_output", None)
    if not request.options.simplify_output:
        data["meta"] = {
            "backend": backend.name,
            "resource": request.resource,
            "operation": request.operation,
        }
    return data


def _get_balance(backend: Backend, request: Request, today: Optional[date]) -> dict:
    result = backend.get_balance(request.account_number, request.bank_code or None)
    return _shape(result.to_dict(), request, backend)


def _fetch_transactions(backend: Backend, request: Request, today: Optional[date]):
    date_range = resolve_date_range(request.date_range, request.start_date, request.end_date, today=today)
    result = backend.get_transactions(request.account_number, request.bank_code or None, date_range)
    result.truncate(request.options.max_results)
    return result


def _get_transactions(backend: Backend, request: Request, today: Optional[date]) -> dict:
    return _shape(_fetch_transactions(backend, request, today).to_dict(), request, backend)


def _export_transactions(backend: Backend, request: Request, today: Optional[date]) -> dict:
    output_format = request.options.output_format or "csv"
    if output_format not in OUTPUT_FORMATS:
        raise ConfigurationError(f"Unknown output format: {output_format}")
    result = _fetch_transactions(backend, request, today)
    data = _shape(result.to_dict(), request, backend)
    if output_format == "csv":
        data["csv_data"] = transactions_to_csv(result.transactions)
    data["format"] = output_format
    return data


def _list_accounts(backend: Backend, request: Request, today: Optional[date]) -> dict:
    return _shape(backend.list_accounts().to_dict(), request, backend)


def _get_account_info(backend: Backend, request: Request, today: Optional[date]) -> dict:
    listing = backend.list_accounts()
    try:
        account = match_account(listing.accounts, request.account_number)
    except FinTSBridgeError as exc:
        exc.backend = exc.backend or backend.name
        raise
    data = account.to_dict()
    data["timestamp"] = now_iso()
    data["raw_output"] = listing.raw_output
    return _shape(data, request, backend)


def _list_users(backend: Backend, request: Request, today: Optional[date]) -> dict:
    return _shape(backend.list_users().to_dict(), request, backend)


def _get_system_id(backend: Backend, request: Request, today: Optional[date]) -> dict:
    return _shape(backend.get_system_id().to_dict(), request, backend)


def _get_tan_methods(backend: Backend, request: Request, today: Optional[date]) -> dict:
    return _shape(backend.get_tan_methods().to_dict(), request, backend)


HANDLERS = {
    ("account", "getBalance"): _get_balance,
    ("account", "listAccounts"): _list_accounts,
    ("account", "getAccountInfo"): _get_account_info,
    ("transaction", "getTransactions"): _get_transactions,
    ("transaction", "exportTransactions"): _export_transactions,
    ("user", "listUsers"): _list_users,
    ("user", "getSystemId"): _get_system_id,
    ("user", "getTanMethods"): _get_tan_methods,
}


def validate_request(request: Request) -> None:
    if (request.resource, request.operation) not in HANDLERS:
        raise ConfigurationError(f"Unknown {request.resource or 'resource'} operation: {request.operation}")
    if request.operation in ACCOUNT_REQUIRED and not (request.account_number or "").strip():
        raise ConfigurationError(f"Account number is required for {request.operation}")


def dispatch(
    request: Request,
    cfg: Config,
    backend_factory: Optional[BackendFactory] = None,
    today: Optional[date] = None,
) -> dict:
    validate_request(request)
    request.account_number = (request.account_number or "").strip()
    backend = (backend_factory or create_backend)(cfg)
    logger.debug("Dispatching %s/%s to %s backend", request.resource, request.operation, backend.name)
    return HANDLERS[(request.resource, request.operation)](backend, request, today)


def error_record(exc: Exception, request: Request) -> dict:
    return {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "operation": request.operation,
        "resource": request.resource,
    }


def run_batch(
    requests: Sequence[Request],
    cfg: Config,
    continue_on_fail: bool = False,
    backend_factory: Optional[BackendFactory] = None,
    today: Optional[date] = None,
) -> list[dict]:
    results = []
    for index, request in enumerate(requests):
        try:
            results.append(dispatch(request, cfg, backend_factory=backend_factory, today=today))
        except FinTSBridgeError as exc:
            if not continue_on_fail:
                raise
            logger.debug("Batch item %d failed: %s", index, exc)
            results.append(error_record(exc, request))
    return results


def json_default(value):
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Type {type(value)} not serializable")


def to_json(data, indent: Optional[int] = 2) -> str:
    return json.dumps(data, indent=indent, ensure_ascii=False, default=json_default)
