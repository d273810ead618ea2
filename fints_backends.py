import json
import logging
import os
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from fints.client import FinTS3PinTanClient, NeedTANResponse

from fints_config import (
    BACKEND_DOCKER,
    BACKEND_NATIVE,
    BACKEND_PYTHON,
    BACKEND_SYSTEM,
    DEFAULT_BACKEND,
    Config,
    ensure_product_id,
)
from fints_errors import (
    BackendExecutionError,
    BackendUnavailableError,
    ConfigurationError,
    FinTSBridgeError,
    NotFoundError,
    ParseError,
)
from fints_records import (
    DEFAULT_CURRENCY,
    NATIVE_RAW_OUTPUT_NOTICE,
    Account,
    AccountList,
    Balance,
    DateRange,
    SystemIdResult,
    TanMethod,
    TanMethodList,
    Transaction,
    TransactionList,
    User,
    UserList,
    clean_text,
    match_account,
    normalize_amount,
    normalize_iban,
    parse_account_list_output,
    parse_balance_output,
    parse_compact_date,
    parse_system_id_output,
    parse_tan_methods_output,
    parse_transaction_output,
    parse_user_list_output,
    today_iso,
)


logger = logging.getLogger(__name__)

AQBANKING_CLI = "aqbanking-cli"
AQHBCI_TOOL = "aqhbci-tool4"
DOCKER = "docker"
CONTAINER_AQBANKING_DIR = "/root/.aqbanking"
DEBUG_ENV = {
    "GWEN_LOGLEVEL": "info",
    "AQBANKING_LOGLEVEL": "info",
    "AQHBCI_LOGLEVEL": "info",
}

PinProvider = Callable[[], Optional[str]]


# Process execution


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int


class SubprocessRunner:
    def run(
        self,
        command: str,
        args: list[str],
        stdin_text: Optional[str] = None,
        env: Optional[dict] = None,
    ) -> ProcessResult:
        # env applies to this child only
        child_env = {**os.environ, **env} if env else None
        logger.debug("Running %s with %d arguments", command, len(args))
        try:
            proc = subprocess.run(
                [command, *args],
                input=stdin_text if stdin_text is not None else "",
                check=False,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=child_env,
            )
        except OSError as exc:
            raise BackendUnavailableError(f"Failed to execute {command}: {exc}") from exc
        return ProcessResult(stdout=proc.stdout or "", stderr=proc.stderr or "", exit_code=proc.returncode)


# Native objects -> records


def _native_decimal(value) -> Optional[Decimal]:
    value = getattr(value, "amount", value)
    if isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            return normalize_amount(value)
        return result if result.is_finite() else None
    return normalize_amount(value)


def _iso(value) -> str:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return clean_text(value)


def account_from_native(acc) -> Account:
    if isinstance(acc, Account):
        return acc
    return Account(
        account_number=clean_text(getattr(acc, "accountnumber", None) or getattr(acc, "account_number", None)),
        iban=clean_text(getattr(acc, "iban", None)),
        bic=clean_text(getattr(acc, "bic", None)),
        bank_code=clean_text(getattr(acc, "blz", None) or getattr(acc, "bank_code", None)),
        account_name=clean_text(getattr(acc, "name", None) or getattr(acc, "account_name", None)),
        bank_name=clean_text(getattr(acc, "bank_name", None)),
        account_type=clean_text(getattr(acc, "type", None) or getattr(acc, "account_type", None)),
    )


def transaction_from_dict(data: dict) -> Transaction:
    amount = _native_decimal(data.get("amount"))
    return Transaction(
        amount=amount if amount is not None else Decimal("0"),
        currency=clean_text(data.get("currency")) or DEFAULT_CURRENCY,
        date=clean_text(data.get("date")),
        valuta_date=clean_text(data.get("valuta_date")),
        remote_name=clean_text(data.get("remote_name")),
        purpose=clean_text(data.get("purpose")),
        remote_iban=normalize_iban(clean_text(data.get("remote_iban"))),
        remote_bic=clean_text(data.get("remote_bic")),
        transaction_code=clean_text(data.get("transaction_code")),
        reference=clean_text(data.get("reference")),
        booking_text=clean_text(data.get("booking_text")),
        prima_nota=clean_text(data.get("prima_nota")),
    )


def transaction_from_native(item) -> Transaction:
    data = getattr(item, "data", item)
    if not isinstance(data, dict):
        data = {}
    amount = data.get("amount")
    return transaction_from_dict(
        {
            "amount": amount,
            "currency": getattr(amount, "currency", None) or data.get("currency"),
            "date": _iso(data.get("entry_date") or data.get("booking_date") or data.get("date")),
            "valuta_date": _iso(data.get("date")),
            "remote_name": data.get("applicant_name") or data.get("recipient_name") or data.get("name"),
            "purpose": data.get("purpose") or data.get("text"),
            "remote_iban": data.get("applicant_iban") or data.get("recipient_iban") or data.get("remote_iban"),
            "remote_bic": data.get("applicant_bin") or data.get("recipient_bic") or data.get("remote_bic"),
            "transaction_code": data.get("transaction_code") or data.get("id"),
            "reference": data.get("end_to_end_reference") or data.get("customer_reference"),
            "booking_text": data.get("posting_text"),
            "prima_nota": data.get("prima_nota"),
        }
    )


# Backends


class Backend:
    name = ""

    def __init__(self, cfg: Config, pin_provider: Optional[PinProvider] = None):
        self.cfg = cfg
        self._pin_provider = pin_provider

    def _pin(self) -> Optional[str]:
        if self._pin_provider is None:
            return None
        return self._pin_provider()

    def get_balance(self, account_number: str, bank_code: Optional[str] = None) -> Balance:
        raise NotImplementedError

    def get_transactions(
        self,
        account_number: str,
        bank_code: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> TransactionList:
        raise NotImplementedError

    def list_accounts(self) -> AccountList:
        raise NotImplementedError

    def list_users(self) -> UserList:
        raise NotImplementedError

    def get_system_id(self) -> SystemIdResult:
        raise NotImplementedError

    def get_tan_methods(self) -> TanMethodList:
        raise NotImplementedError

    def configured_user(self) -> User:
        return User(
            user_id=self.cfg.user_id or "",
            user_name=self.cfg.user_name or self.cfg.customer_id or "",
            bank_code=self.cfg.blz or "",
        )


class PinTanSession:
    # one python-fints dialog, opened on first use
    def __init__(self, cfg: Config, pin: str):
        self._client = FinTS3PinTanClient(
            cfg.blz,
            cfg.user_id,
            pin,
            cfg.server,
            customer_id=cfg.customer_id or None,
            product_id=ensure_product_id(cfg),
        )
        if cfg.tan_method_id:
            self._client.set_tan_mechanism(cfg.tan_method_id)
        self._open = False

    def _ensure_open(self) -> None:
        if self._open:
            return
        self._client.__enter__()
        self._open = True
        self._settle(getattr(self._client, "init_tan_response", None))

    @staticmethod
    def _settle(resp):
        if isinstance(resp, NeedTANResponse):
            raise BackendExecutionError(
                "Bank requires a TAN to continue; TAN approval is not supported here.",
                backend=BACKEND_NATIVE,
            )
        return resp

    def accounts(self):
        self._ensure_open()
        return self._settle(self._client.get_sepa_accounts())

    def balance(self, account) -> dict:
        self._ensure_open()
        bal = self._settle(self._client.get_balance(account))
        amount = getattr(bal, "amount", None)
        return {
            "amount": getattr(amount, "amount", amount),
            "currency": getattr(amount, "currency", None),
            "date": getattr(bal, "date", None),
        }

    def transactions(self, account, start_date=None, end_date=None):
        self._ensure_open()
        return self._settle(self._client.get_transactions(account, start_date=start_date, end_date=end_date))

    def system_id(self) -> str:
        self._ensure_open()
        return getattr(self._client, "system_id", None) or ""

    def tan_methods(self) -> list[tuple[str, str]]:
        self._ensure_open()
        mechanisms = self._client.get_tan_mechanisms() or {}
        return [(str(key), getattr(value, "name", None) or str(value)) for key, value in mechanisms.items()]

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._client.__exit__(None, None, None)


class NativeBackend(Backend):
    name = BACKEND_NATIVE

    def __init__(
        self,
        cfg: Config,
        pin_provider: Optional[PinProvider] = None,
        session_factory: Optional[Callable[[Config, str], object]] = None,
    ):
        super().__init__(cfg, pin_provider)
        self._session_factory = session_factory or PinTanSession

    def _open_session(self):
        pin = self._pin()
        if not pin:
            raise ConfigurationError("A PIN is required for the native FinTS backend.", backend=self.name)
        try:
            return self._session_factory(self.cfg, pin)
        except FinTSBridgeError:
            raise
        except Exception as exc:
            raise BackendUnavailableError(f"Failed to initialize FinTS client: {exc}", backend=self.name) from exc

    @contextmanager
    def _session(self):
        session = self._open_session()
        try:
            yield session
        except FinTSBridgeError as exc:
            if exc.backend is None:
                exc.backend = self.name
            raise
        except Exception as exc:
            raise BackendExecutionError(f"FinTS call failed: {exc}", backend=self.name) from exc
        finally:
            try:
                session.close()
            except Exception as exc:
                logger.debug("Ignoring error while closing FinTS session: %s", exc)

    def get_balance(self, account_number: str, bank_code: Optional[str] = None) -> Balance:
        with self._session() as session:
            acc = match_account(session.accounts(), account_number, key=account_from_native)
            bal = session.balance(acc)
        info = account_from_native(acc)
        amount = _native_decimal(bal.get("amount"))
        return Balance(
            balance=amount if amount is not None else Decimal("0"),
            currency=clean_text(bal.get("currency")) or DEFAULT_CURRENCY,
            account_number=info.account_number,
            bank_code=info.bank_code or bank_code or self.cfg.blz or "",
            iban=info.iban,
            account_name=info.account_name,
            date=_iso(bal.get("date")) or today_iso(),
            raw_output=NATIVE_RAW_OUTPUT_NOTICE,
        )

    def get_transactions(
        self,
        account_number: str,
        bank_code: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> TransactionList:
        date_range = date_range or DateRange()
        with self._session() as session:
            acc = match_account(session.accounts(), account_number, key=account_from_native)
            items = session.transactions(
                acc,
                parse_compact_date(date_range.start_date),
                parse_compact_date(date_range.end_date),
            )
            transactions = [transaction_from_native(item) for item in items or []]
        info = account_from_native(acc)
        return TransactionList(
            transactions=transactions,
            account_number=info.account_number,
            bank_code=info.bank_code or bank_code or self.cfg.blz or "",
            iban=info.iban,
            date_range=date_range,
            raw_output=NATIVE_RAW_OUTPUT_NOTICE,
        )

    def list_accounts(self) -> AccountList:
        with self._session() as session:
            accounts = [account_from_native(a) for a in session.accounts()]
        return AccountList(accounts=accounts, raw_output=NATIVE_RAW_OUTPUT_NOTICE)

    def list_users(self) -> UserList:
        return UserList(users=[self.configured_user()], raw_output=NATIVE_RAW_OUTPUT_NOTICE)

    def get_system_id(self) -> SystemIdResult:
        with self._session() as session:
            system_id = session.system_id()
        if not system_id:
            raise ParseError("Bank did not report a system ID.", backend=self.name)
        return SystemIdResult(system_id=str(system_id), raw_output=NATIVE_RAW_OUTPUT_NOTICE)

    def get_tan_methods(self) -> TanMethodList:
        with self._session() as session:
            methods = [TanMethod(id=str(i), name=clean_text(n)) for i, n in session.tan_methods()]
        if not methods:
            raise ParseError("Bank did not report any TAN methods.", backend=self.name)
        return TanMethodList(tan_methods=methods, raw_output=NATIVE_RAW_OUTPUT_NOTICE)


class ExternalToolBackend(Backend):
    name = BACKEND_SYSTEM

    def __init__(
        self,
        cfg: Config,
        pin_provider: Optional[PinProvider] = None,
        runner: Optional[SubprocessRunner] = None,
    ):
        super().__init__(cfg, pin_provider)
        self.runner = runner or SubprocessRunner()

    # argument vectors

    def base_args(self) -> list[str]:
        args = []
        if self.cfg.non_interactive:
            args.append("--noninteractive")
        if self.cfg.server:
            args.extend(["--url", self.cfg.server])
        return args

    def hbci_args(self) -> list[str]:
        args = []
        if self.cfg.user_id:
            args.extend(["-u", self.cfg.user_id])
        if self.cfg.server:
            args.extend(["--url", self.cfg.server])
        return args

    def balance_args(self, account_number: str, bank_code: Optional[str] = None) -> list[str]:
        args = self.base_args() + ["request", "--balance"]
        if bank_code:
            args.extend(["-b", bank_code])
        args.extend(["-a", account_number])
        return args

    def transaction_args(
        self,
        account_number: str,
        bank_code: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> list[str]:
        args = self.base_args() + ["request", "--transactions"]
        if bank_code:
            args.extend(["-b", bank_code])
        args.extend(["-a", account_number])
        if date_range and date_range.start_date:
            args.extend(["--fromdate", date_range.start_date])
        if date_range and date_range.end_date:
            args.extend(["--todate", date_range.end_date])
        return args

    # execution

    def spawn(self, tool: str, args: list[str], stdin_text: Optional[str], env: Optional[dict]) -> ProcessResult:
        return self.runner.run(tool, args, stdin_text=stdin_text, env=env)

    def execute(self, tool: str, args: list[str]) -> str:
        stdin_text = None
        if not self.cfg.non_interactive:
            pin = self._pin()
            if pin:
                stdin_text = pin + "\n"
        env = dict(DEBUG_ENV) if self.cfg.enable_debug_logging else None
        try:
            result = self.spawn(tool, args, stdin_text, env)
        except FinTSBridgeError as exc:
            exc.backend = exc.backend or self.name
            raise
        if result.exit_code != 0:
            raise BackendExecutionError(
                f"{tool} exited with code {result.exit_code}. Error: {result.stderr.strip()}",
                backend=self.name,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        logger.debug("%s returned %d bytes", tool, len(result.stdout))
        return result.stdout

    def _parse(self, parser, output: str):
        try:
            return parser(output)
        except ParseError as exc:
            exc.backend = self.name
            raise

    # operations

    def get_balance(self, account_number: str, bank_code: Optional[str] = None) -> Balance:
        output = self.execute(AQBANKING_CLI, self.balance_args(account_number, bank_code))
        amount, currency = self._parse(parse_balance_output, output)
        return Balance(
            balance=amount,
            currency=currency or DEFAULT_CURRENCY,
            account_number=account_number,
            bank_code=bank_code or self.cfg.blz or "",
            raw_output=output,
        )

    def get_transactions(
        self,
        account_number: str,
        bank_code: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> TransactionList:
        date_range = date_range or DateRange()
        output = self.execute(AQBANKING_CLI, self.transaction_args(account_number, bank_code, date_range))
        return TransactionList(
            transactions=parse_transaction_output(output),
            account_number=account_number,
            bank_code=bank_code or self.cfg.blz or "",
            date_range=date_range,
            raw_output=output,
        )

    def list_accounts(self) -> AccountList:
        output = self.execute(AQHBCI_TOOL, ["listaccounts"])
        return AccountList(accounts=parse_account_list_output(output), raw_output=output)

    def list_users(self) -> UserList:
        output = self.execute(AQHBCI_TOOL, ["listusers"])
        return UserList(users=parse_user_list_output(output), raw_output=output)

    def get_system_id(self) -> SystemIdResult:
        output = self.execute(AQHBCI_TOOL, self.hbci_args() + ["getsysid"])
        return SystemIdResult(system_id=self._parse(parse_system_id_output, output), raw_output=output)

    def get_tan_methods(self) -> TanMethodList:
        output = self.execute(AQHBCI_TOOL, self.hbci_args() + ["getitanmodes"])
        return TanMethodList(tan_methods=self._parse(parse_tan_methods_output, output), raw_output=output)


class ContainerToolBackend(ExternalToolBackend):
    name = BACKEND_DOCKER

    def container_args(self, tool: str, args: list[str], env: Optional[dict]) -> list[str]:
        volume = f"{self.cfg.host_aqbanking_dir}:{CONTAINER_AQBANKING_DIR}"
        docker_args = ["run", "--rm", "-i", "-v", volume]
        for key, value in (env or {}).items():
            docker_args.extend(["-e", f"{key}={value}"])
        return docker_args + [self.cfg.docker_image, tool, *args]

    def spawn(self, tool: str, args: list[str], stdin_text: Optional[str], env: Optional[dict]) -> ProcessResult:
        return self.runner.run(DOCKER, self.container_args(tool, args, env), stdin_text=stdin_text)


SCRIPT_TEMPLATE = r'''
import json
import sys
from datetime import date, datetime

OPERATION = __OPERATION__


def emit(obj):
    print(json.dumps(obj, default=str))


try:
    from fints.client import FinTS3PinTanClient, NeedTANResponse
except ImportError:
    emit({"error": "python-fints package not installed. Run: pip install python-fints", "kind": "unavailable"})
    sys.exit(0)


def text(value):
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(str(x) for x in value if x is not None)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def day(value):
    return datetime.strptime(value, "%Y%m%d").date() if value else None


def settle(resp):
    if isinstance(resp, NeedTANResponse):
        raise RuntimeError("Bank requires a TAN to continue; TAN approval is not supported here.")
    return resp


def describe(acc):
    return {
        "account_number": acc.accountnumber or "",
        "iban": acc.iban or "",
        "bic": acc.bic or "",
        "bank_code": acc.blz or "",
    }


def find_account(client, wanted):
    needle = "".join(wanted.split())
    for acc in settle(client.get_sepa_accounts()):
        iban = acc.iban or ""
        if wanted in (acc.accountnumber, iban) or "".join(iban.split()) == needle:
            return acc
    return None


def run(client, params):
    with client:
        settle(getattr(client, "init_tan_response", None))
        if OPERATION == "listAccounts":
            return {"accounts": [describe(a) for a in settle(client.get_sepa_accounts())]}
        if OPERATION == "getSystemId":
            return {"system_id": text(client.system_id)}
        if OPERATION == "getTanMethods":
            mechanisms = client.get_tan_mechanisms() or {}
            return {"tan_methods": [{"id": str(k), "name": text(getattr(v, "name", v))} for k, v in mechanisms.items()]}
        account = find_account(client, params["account_number"])
        if account is None:
            return {"error": "Account %s not found" % params["account_number"], "kind": "not_found"}
        if OPERATION == "getBalance":
            bal = settle(client.get_balance(account))
            amount = getattr(bal, "amount", None)
            result = describe(account)
            result.update(
                balance=text(getattr(amount, "amount", amount)),
                currency=text(getattr(amount, "currency", "")),
                date=text(getattr(bal, "date", None)),
            )
            return result
        if OPERATION == "getTransactions":
            rows = settle(client.get_transactions(account, day(params.get("start_date")), day(params.get("end_date"))))
            txs = []
            for item in rows:
                data = getattr(item, "data", None) or {}
                amount = data.get("amount")
                txs.append({
                    "amount": text(getattr(amount, "amount", amount)),
                    "currency": text(getattr(amount, "currency", "")),
                    "date": text(data.get("entry_date") or data.get("date")),
                    "valuta_date": text(data.get("date")),
                    "remote_name": text(data.get("applicant_name")),
                    "purpose": text(data.get("purpose")),
                    "remote_iban": text(data.get("applicant_iban")),
                    "remote_bic": text(data.get("applicant_bin")),
                    "transaction_code": text(data.get("transaction_code")),
                    "reference": text(data.get("end_to_end_reference")),
                    "booking_text": text(data.get("posting_text")),
                    "prima_nota": text(data.get("prima_nota")),
                })
            result = describe(account)
            result["transactions"] = txs
            return result
    return {"error": "Unknown operation: %s" % OPERATION, "kind": "execution"}


def main():
    params = json.loads(sys.stdin.read() or "{}")
    try:
        client = FinTS3PinTanClient(
            params["bank_code"],
            params["user_id"],
            params["pin"],
            params["server"],
            customer_id=params.get("customer_id") or None,
            product_id=params.get("product_id"),
        )
        if params.get("tan_method_id"):
            client.set_tan_mechanism(params["tan_method_id"])
        emit(run(client, params))
    except Exception as exc:
        emit({"error": str(exc), "kind": "execution"})


main()
'''

SCRIPT_ERRORS = {
    "not_found": NotFoundError,
    "unavailable": BackendUnavailableError,
}


def build_script(operation: str) -> str:
    return SCRIPT_TEMPLATE.replace("__OPERATION__", json.dumps(operation))


class ScriptedBackend(Backend):
    # parameters (PIN included) go as JSON on stdin, never in argv
    name = BACKEND_PYTHON

    def __init__(
        self,
        cfg: Config,
        pin_provider: Optional[PinProvider] = None,
        runner: Optional[SubprocessRunner] = None,
    ):
        super().__init__(cfg, pin_provider)
        self.runner = runner or SubprocessRunner()

    def call(self, operation: str, **params) -> tuple[dict, str]:
        payload = {
            "bank_code": self.cfg.blz,
            "user_id": self.cfg.user_id,
            "customer_id": self.cfg.customer_id,
            "server": self.cfg.server,
            "product_id": ensure_product_id(self.cfg),
            "tan_method_id": self.cfg.tan_method_id,
            "pin": self._pin(),
            **params,
        }
        try:
            result = self.runner.run(
                self.cfg.python_path,
                ["-c", build_script(operation)],
                stdin_text=json.dumps(payload),
            )
        except FinTSBridgeError as exc:
            exc.backend = exc.backend or self.name
            raise
        if result.exit_code != 0:
            raise BackendExecutionError(
                f"Python FinTS process failed with code {result.exit_code}. Error: {result.stderr.strip()}",
                backend=self.name,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        try:
            data = json.loads(result.stdout)
        except ValueError as exc:
            raise BackendExecutionError(
                f"Failed to parse Python FinTS response: {exc}",
                backend=self.name,
                stderr=result.stderr,
            ) from exc
        if not isinstance(data, dict):
            raise BackendExecutionError("Python FinTS response is not a JSON object", backend=self.name)
        if "error" in data:
            error_cls = SCRIPT_ERRORS.get(data.get("kind"), BackendExecutionError)
            raise error_cls(str(data["error"]), backend=self.name)
        return data, result.stdout

    def get_balance(self, account_number: str, bank_code: Optional[str] = None) -> Balance:
        data, raw = self.call("getBalance", account_number=account_number)
        amount = _native_decimal(data.get("balance"))
        if amount is None:
            raise ParseError("Python FinTS response carries no balance", output=raw, backend=self.name)
        return Balance(
            balance=amount,
            currency=clean_text(data.get("currency")) or DEFAULT_CURRENCY,
            account_number=clean_text(data.get("account_number")) or account_number,
            bank_code=clean_text(data.get("bank_code")) or bank_code or self.cfg.blz or "",
            iban=clean_text(data.get("iban")),
            date=clean_text(data.get("date")) or today_iso(),
            raw_output=raw,
        )

    def get_transactions(
        self,
        account_number: str,
        bank_code: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> TransactionList:
        date_range = date_range or DateRange()
        data, raw = self.call(
            "getTransactions",
            account_number=account_number,
            start_date=date_range.start_date,
            end_date=date_range.end_date,
        )
        return TransactionList(
            transactions=[transaction_from_dict(t) for t in data.get("transactions") or []],
            account_number=clean_text(data.get("account_number")) or account_number,
            bank_code=clean_text(data.get("bank_code")) or bank_code or self.cfg.blz or "",
            iban=clean_text(data.get("iban")),
            date_range=date_range,
            raw_output=raw,
        )

    def list_accounts(self) -> AccountList:
        data, raw = self.call("listAccounts")
        accounts = [
            Account(**{k: clean_text(v) for k, v in item.items() if k in Account.__dataclass_fields__})
            for item in data.get("accounts") or []
        ]
        return AccountList(accounts=accounts, raw_output=raw)

    def list_users(self) -> UserList:
        return UserList(users=[self.configured_user()])

    def get_system_id(self) -> SystemIdResult:
        data, raw = self.call("getSystemId")
        system_id = clean_text(data.get("system_id"))
        if not system_id:
            raise ParseError("Python FinTS response carries no system ID", output=raw, backend=self.name)
        return SystemIdResult(system_id=system_id, raw_output=raw)

    def get_tan_methods(self) -> TanMethodList:
        data, raw = self.call("getTanMethods")
        methods = [
            TanMethod(id=clean_text(m.get("id")), name=clean_text(m.get("name")))
            for m in data.get("tan_methods") or []
        ]
        if not methods:
            raise ParseError("Python FinTS response lists no TAN methods", output=raw, backend=self.name)
        return TanMethodList(tan_methods=methods, raw_output=raw)


def create_backend(
    cfg: Config,
    pin_provider: Optional[PinProvider] = None,
    runner: Optional[SubprocessRunner] = None,
    session_factory: Optional[Callable[[Config, str], object]] = None,
) -> Backend:
    name = (cfg.backend or DEFAULT_BACKEND).strip().lower()
    if name == BACKEND_SYSTEM:
        return ExternalToolBackend(cfg, pin_provider, runner)
    if name == BACKEND_DOCKER:
        return ContainerToolBackend(cfg, pin_provider, runner)
    if name == BACKEND_PYTHON:
        return ScriptedBackend(cfg, pin_provider, runner)
    if name == BACKEND_NATIVE:
        return NativeBackend(cfg, pin_provider, session_factory)
    raise ConfigurationError(f"Unknown backend: {cfg.backend}")
