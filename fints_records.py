import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Sequence, Union

from fints_errors import ConfigurationError, NotFoundError, ParseError


logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "EUR"
NATIVE_RAW_OUTPUT_NOTICE = "Native FinTS implementation - no raw output available"

TRANSACTION_MARKERS = ("transaction ", "Transaction ")
ACCOUNT_MARKERS = ("Account ", "Konto ")
USER_MARKERS = ("User ", "Benutzer ")

CSV_HEADER = (
    "Date",
    "Amount",
    "Currency",
    "Remote Name",
    "Purpose",
    "Remote IBAN",
    "Remote BIC",
    "Transaction Code",
)

DATE_RANGE_DAYS = {"last30Days": 30, "last90Days": 90}
DATE_RANGES = ("all", "last30Days", "last90Days", "custom")


def now_iso() -> str:
    return datetime.now().isoformat()


def today_iso() -> str:
    return date.today().isoformat()


# Records


@dataclass
class Transaction:
    amount: Decimal = Decimal("0")
    currency: str = DEFAULT_CURRENCY
    date: str = ""
    valuta_date: str = ""
    remote_name: str = ""
    purpose: str = ""
    remote_iban: str = ""
    remote_bic: str = ""
    transaction_code: str = ""
    reference: str = ""
    booking_text: str = ""
    prima_nota: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Account:
    account_number: str = ""
    iban: str = ""
    bic: str = ""
    bank_code: str = ""
    account_name: str = ""
    bank_name: str = ""
    account_type: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class User:
    user_id: str = ""
    user_name: str = ""
    bank_code: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TanMethod:
    id: str
    name: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DateRange:
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Balance:
    balance: Decimal
    currency: str = DEFAULT_CURRENCY
    account_number: str = ""
    bank_code: str = ""
    iban: str = ""
    account_name: str = ""
    date: str = ""
    timestamp: str = field(default_factory=now_iso)
    raw_output: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TransactionList:
    transactions: list[Transaction] = field(default_factory=list)
    account_number: str = ""
    bank_code: str = ""
    iban: str = ""
    date_range: DateRange = field(default_factory=DateRange)
    timestamp: str = field(default_factory=now_iso)
    raw_output: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.transactions)

    def truncate(self, max_results: int) -> None:
        if max_results and max_results > 0:
            self.transactions = self.transactions[:max_results]

    def to_dict(self) -> dict:
        return {
            "transactions": [t.to_dict() for t in self.transactions],
            "count": self.count,
            "account_number": self.account_number,
            "bank_code": self.bank_code,
            "iban": self.iban,
            "date_range": self.date_range.to_dict(),
            "timestamp": self.timestamp,
            "raw_output": self.raw_output,
        }


@dataclass
class AccountList:
    accounts: list[Account] = field(default_factory=list)
    timestamp: str = field(default_factory=now_iso)
    raw_output: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "accounts": [a.to_dict() for a in self.accounts],
            "timestamp": self.timestamp,
            "raw_output": self.raw_output,
        }


@dataclass
class UserList:
    users: list[User] = field(default_factory=list)
    timestamp: str = field(default_factory=now_iso)
    raw_output: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "users": [u.to_dict() for u in self.users],
            "timestamp": self.timestamp,
            "raw_output": self.raw_output,
        }


@dataclass
class SystemIdResult:
    system_id: str
    timestamp: str = field(default_factory=now_iso)
    raw_output: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TanMethodList:
    tan_methods: list[TanMethod] = field(default_factory=list)
    timestamp: str = field(default_factory=now_iso)
    raw_output: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tan_methods": [m.to_dict() for m in self.tan_methods],
            "timestamp": self.timestamp,
            "raw_output": self.raw_output,
        }


# Value normalization

_NUMBER_PREFIX = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")


def normalize_amount(value) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            return None
        return result if result.is_finite() else None
    # dots are thousands separators: strip them before the comma becomes the point
    text = str(value).strip().replace(".", "").replace(",", ".", 1)
    m = _NUMBER_PREFIX.match(text)
    if not m:
        return None
    return Decimal(m.group(0))


def clean_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        value = " ".join(str(x) for x in value if x is not None)
    text = str(value).replace("\n", " ").replace("\r", " ").replace("\t", " ")
    return " ".join(text.split())


def normalize_iban(value: str) -> str:
    return re.sub(r"\s+", "", (value or ""))


def format_compact_date(value: Union[date, datetime, str]) -> str:
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, str):
        text = value.strip()
        if re.fullmatch(r"\d{8}", text):
            return text
        try:
            value = datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError as exc:
            raise ConfigurationError(f"Invalid date: {value!r}") from exc
    return value.strftime("%Y%m%d")


def parse_compact_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return datetime.strptime(value, "%Y%m%d").date()


def resolve_date_range(
    selector: str,
    start=None,
    end=None,
    today: Optional[date] = None,
) -> DateRange:
    today = today or date.today()
    if selector == "all":
        return DateRange()
    if selector in DATE_RANGE_DAYS:
        start_day = today - timedelta(days=DATE_RANGE_DAYS[selector])
        return DateRange(format_compact_date(start_day), format_compact_date(today))
    if selector == "custom":
        return DateRange(
            format_compact_date(start) if start else None,
            format_compact_date(end) if end else None,
        )
    raise ConfigurationError(
        f"Unknown date range: {selector!r}. Expected one of: {', '.join(DATE_RANGES)}"
    )


# Field mapping

FieldRule = tuple[tuple[str, ...], str]

TRANSACTION_RULES: Sequence[FieldRule] = (
    (("value_value", "amount"), "amount"),
    (("value_currency", "currency"), "currency"),
    (("date", "valutadate"), "date"),
    (("remotename", "name"), "remote_name"),
    (("purpose", "memo", "reference"), "purpose"),
    (("remoteiban", "iban"), "remote_iban"),
    (("remotebic", "bic"), "remote_bic"),
    (("transactioncode", "code"), "transaction_code"),
)

ACCOUNT_RULES: Sequence[FieldRule] = (
    (("number", "nummer"), "account_number"),
    (("iban",), "iban"),
    (("bic", "blz"), "bic"),
    (("bankname", "bank name", "institut"), "bank_name"),
    (("name", "owner", "inhaber"), "account_name"),
    (("bank",), "bank_name"),
    (("type", "typ"), "account_type"),
)

USER_RULES: Sequence[FieldRule] = (
    (("userid", "id"), "user_id"),
    (("name",), "user_name"),
    (("bank", "blz"), "bank_code"),
)

_CONVERTERS: dict[str, Callable] = {"amount": normalize_amount}


def map_field(fields: dict, label: str, value: str, rules: Sequence[FieldRule]) -> Optional[str]:
    key = label.strip().lower()
    for needles, target in rules:
        if any(n in key for n in needles):
            if target == "date" and "date" in fields:
                # booking and valuta date share one slot; the later line wins
                logger.debug("Overwriting date %r with %r (label %r)", fields["date"], value, label)
            convert = _CONVERTERS.get(target)
            fields[target] = convert(value) if convert else value
            return target
    return None


def _build_transaction(fields: dict) -> Transaction:
    tx = Transaction()
    for name, value in fields.items():
        if value is None or value == "":
            continue
        setattr(tx, name, value)
    return tx


def _build_account(fields: dict) -> Account:
    return Account(**{k: v for k, v in fields.items() if v})


def _build_user(fields: dict) -> User:
    return User(**{k: v for k, v in fields.items() if v})


# Record parsing


def parse_records(
    raw_text: str,
    markers: Sequence[str],
    rules: Sequence[FieldRule],
    factory: Callable[[dict], object],
) -> list:
    records = []
    current: dict = {}
    for line in (raw_text or "").splitlines():
        stripped = line.strip()
        if stripped.startswith(tuple(markers)):
            if current:
                records.append(factory(current))
            current = {}
            continue
        label, sep, value = stripped.partition(":")
        if not sep:
            continue
        map_field(current, label.strip(), value.strip(), rules)
    if current:
        records.append(factory(current))
    return records


def parse_transaction_output(output: str) -> list[Transaction]:
    return parse_records(output, TRANSACTION_MARKERS, TRANSACTION_RULES, _build_transaction)


def parse_account_list_output(output: str) -> list[Account]:
    return parse_records(output, ACCOUNT_MARKERS, ACCOUNT_RULES, _build_account)


def parse_user_list_output(output: str) -> list[User]:
    return parse_records(output, USER_MARKERS, USER_RULES, _build_user)


BALANCE_PATTERNS = (
    re.compile(r"(?:Wert|Value|Balance)\s*:\s*([\d,.-]+)\s*([A-Z]{3})", re.I),
    re.compile(r"Saldo\s*:\s*([\d,.-]+)\s*([A-Z]{3})", re.I),
    re.compile(r"([\d,.-]+)\s*([A-Z]{3})\s*(?:Saldo|Balance)", re.I),
)


def parse_balance_output(output: str) -> tuple[Decimal, str]:
    for pattern in BALANCE_PATTERNS:
        m = pattern.search(output or "")
        if not m:
            continue
        amount = normalize_amount(m.group(1))
        if amount is not None:
            return amount, m.group(2).upper()
    raise ParseError(f"Could not parse balance from output: {output}", output=output or "")


_SYSTEM_ID = re.compile(r"System.*ID.*:\s*(\S+)", re.I)
_TAN_METHOD = re.compile(r"(\d+):\s*(.+)")


def parse_system_id_output(output: str) -> str:
    m = _SYSTEM_ID.search(output or "")
    if not m:
        raise ParseError(f"Could not find a system ID in output: {output}", output=output or "")
    return m.group(1)


def parse_tan_methods_output(output: str) -> list[TanMethod]:
    methods = []
    for line in (output or "").splitlines():
        m = _TAN_METHOD.search(line)
        if m:
            methods.append(TanMethod(id=m.group(1), name=m.group(2).strip()))
    if not methods:
        raise ParseError(f"Could not find TAN methods in output: {output}", output=output or "")
    return methods


# Accounts


def account_matches(account: Account, identifier: str) -> bool:
    if not identifier:
        return False
    if account.account_number == identifier or account.iban == identifier:
        return True
    return bool(account.iban) and normalize_iban(account.iban) == normalize_iban(identifier)


def match_account(accounts: Sequence, identifier: str, key: Callable = lambda a: a):
    for acc in accounts:
        if account_matches(key(acc), identifier):
            return acc
    available = ", ".join(key(a).iban or key(a).account_number for a in accounts)
    raise NotFoundError(f"Account {identifier} not found. Available accounts: {available or 'none'}")


# CSV export


def escape_csv_field(value) -> str:
    text = "" if value is None else str(value)
    if "," in text or '"' in text or "\n" in text:
        return '"' + text.replace('"', '""') + '"'
    return text


def transactions_to_csv(transactions: Sequence[Transaction]) -> str:
    lines = [",".join(CSV_HEADER)]
    for tx in transactions:
        row = [
            tx.date,
            tx.amount,
            tx.currency,
            tx.remote_name,
            tx.purpose,
            tx.remote_iban,
            tx.remote_bic,
            tx.transaction_code,
        ]
        lines.append(",".join(escape_csv_field(v) for v in row))
    return "\n".join(lines) + "\n"
