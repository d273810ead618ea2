import getpass
import json
import os
import subprocess
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

from fints_errors import ConfigurationError


BACKEND_SYSTEM = "system"
BACKEND_NATIVE = "native"
BACKEND_PYTHON = "python"
BACKEND_DOCKER = "docker"
BACKENDS = (BACKEND_SYSTEM, BACKEND_NATIVE, BACKEND_PYTHON, BACKEND_DOCKER)

DEFAULT_BACKEND = BACKEND_SYSTEM
DEFAULT_DOCKER_IMAGE = "ghcr.io/larsux/aqbanking-docker"
DEFAULT_PYTHON_PATH = "python3"
ENV_BACKEND = "FINTS_BRIDGE_BACKEND"
ENV_PRODUCT_ID = "FINTS_BRIDGE_PRODUCT_ID"
ENV_PIN = "FINTS_BRIDGE_PIN"

APP_DIR = Path.home() / ".config" / "fints-bridge"
CFG_PATH = APP_DIR / "config.json"
DEFAULT_AQBANKING_DIR = Path.home() / ".aqbanking"


@dataclass
class Config:
    backend: str = DEFAULT_BACKEND
    blz: Optional[str] = None
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    user_name: Optional[str] = None
    server: Optional[str] = None
    product_id: Optional[str] = None
    hbci_version: str = "300"
    tan_method_id: Optional[str] = None
    tan_medium_name: Optional[str] = None
    non_interactive: bool = True
    enable_debug_logging: bool = False
    python_path: str = DEFAULT_PYTHON_PATH
    docker_image: str = DEFAULT_DOCKER_IMAGE
    aqbanking_dir: Optional[str] = None
    keychain_service: str = "fints-bridge-pin"
    keychain_account: Optional[str] = None

    @staticmethod
    def load() -> "Config":
        cfg = Config()
        if CFG_PATH.exists():
            data = json.loads(CFG_PATH.read_text(encoding="utf-8"))
            known = {f.name for f in fields(Config)}
            cfg = Config(**{k: v for k, v in data.items() if k in known})
        env_backend = os.getenv(ENV_BACKEND, "").strip()
        if env_backend:
            cfg.backend = env_backend
        return cfg

    def save(self) -> None:
        APP_DIR.mkdir(parents=True, exist_ok=True)
        CFG_PATH.write_text(json.dumps(asdict(self), indent=2), encoding="utf-8")
        try:
            os.chmod(CFG_PATH, 0o600)
        except OSError:
            pass

    @property
    def host_aqbanking_dir(self) -> Path:
        if self.aqbanking_dir:
            return Path(self.aqbanking_dir).expanduser()
        return DEFAULT_AQBANKING_DIR


def ensure_product_id(cfg: Config, cli_product_id: Optional[str] = None) -> str:
    if cli_product_id:
        cfg.product_id = cli_product_id
    if not cfg.product_id:
        cfg.product_id = os.getenv(ENV_PRODUCT_ID, "").strip() or None
    if not cfg.product_id:
        raise ConfigurationError(
            f"Missing FinTS product ID: set it with 'init --product-id' or {ENV_PRODUCT_ID}."
        )
    return cfg.product_id


def keychain_get_pin(service: str, account: str) -> Optional[str]:
    try:
        proc = subprocess.run(
            ["security", "find-generic-password", "-s", service, "-a", account, "-w"],
            check=False,
            capture_output=True,
            text=True,
        )
    except OSError:
        return None
    if proc.returncode != 0:
        return None
    val = proc.stdout.strip()
    return val or None


def resolve_keychain(args, cfg: Config) -> tuple[str, str]:
    service = (getattr(args, "keychain_service", None) or cfg.keychain_service or "").strip()
    account = (
        getattr(args, "keychain_account", None)
        or cfg.keychain_account
        or cfg.user_id
        or ""
    ).strip()
    if not service or not account:
        raise ConfigurationError("Missing Keychain service/account.")
    return service, account


def get_pin(args, cfg: Config) -> str:
    pin = os.getenv(ENV_PIN, "")
    if pin:
        return pin
    if getattr(args, "no_keychain", False):
        return getpass.getpass("Bank PIN: ")
    try:
        service, account = resolve_keychain(args, cfg)
    except ConfigurationError:
        return getpass.getpass("Bank PIN: ")
    pin = keychain_get_pin(service, account)
    if pin:
        return pin
    return getpass.getpass("Bank PIN: ")
