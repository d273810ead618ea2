import json
from types import SimpleNamespace

import pytest

import fints_bridge as fbr
import fints_config as fc
from fints_backends import ExternalToolBackend, ProcessResult
from fints_errors import ConfigurationError


BALANCE_OUT = "Saldo : 1.234,56 EUR\n"
TX_OUT = (
    "Transaction 1\n  amount: -12,50\n  date: 2024-03-01\n  remoteName: ACME\n"
    "  remoteIban: DE02100100109307118603\n  purpose: Rechnung 42\n"
    "Transaction 2\n  amount: 100,00\n  date: 2024-03-02\n  purpose: Gehalt\n"
)


class FakeRunner:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def run(self, command, args, stdin_text=None, env=None):
        self.calls.append(SimpleNamespace(command=command, args=list(args), stdin_text=stdin_text))
        return self.results.pop(0)


def _install(monkeypatch, *stdouts, cfg=None):
    cfg = cfg or fc.Config(blz="37040044", user_id="max", server="https://fints.example.de/fints")
    runner = FakeRunner(*[ProcessResult(out, "", 0) for out in stdouts])
    seen = []

    def create(config, provide):
        seen.append(config.backend)
        return ExternalToolBackend(config, provide, runner=runner)

    monkeypatch.setattr(fbr.Config, "load", lambda: cfg)
    monkeypatch.setattr(fbr, "create_backend", create)
    return runner, seen


def test_get_pin_prefers_env(monkeypatch):
    monkeypatch.setenv(fc.ENV_PIN, "from-env")
    monkeypatch.setattr(fc, "keychain_get_pin", lambda *_: pytest.fail("keychain must not be read"))
    assert fc.get_pin(SimpleNamespace(no_keychain=False), fc.Config(user_id="u")) == "from-env"


def test_get_pin_uses_keychain(monkeypatch):
    monkeypatch.delenv(fc.ENV_PIN, raising=False)
    seen = {}

    def fake_keychain(service, account):
        seen["service"] = service
        seen["account"] = account
        return "1234"

    monkeypatch.setattr(fc, "keychain_get_pin", fake_keychain)
    args = SimpleNamespace(no_keychain=False, keychain_service="svc-cli", keychain_account=None)
    cfg = fc.Config(user_id="max", keychain_account="acc-cfg")

    assert fc.get_pin(args, cfg) == "1234"
    assert seen == {"service": "svc-cli", "account": "acc-cfg"}


def test_get_pin_falls_back_to_prompt(monkeypatch):
    monkeypatch.delenv(fc.ENV_PIN, raising=False)
    monkeypatch.setattr(fc, "keychain_get_pin", lambda *_: None)
    monkeypatch.setattr(fc.getpass, "getpass", lambda *_: "typed")
    assert fc.get_pin(SimpleNamespace(no_keychain=False), fc.Config(user_id="max")) == "typed"


def test_get_pin_no_keychain_skips_lookup(monkeypatch):
    monkeypatch.delenv(fc.ENV_PIN, raising=False)
    monkeypatch.setattr(fc, "keychain_get_pin", lambda *_: pytest.fail("keychain must not be read"))
    monkeypatch.setattr(fc.getpass, "getpass", lambda *_: "typed")
    assert fc.get_pin(SimpleNamespace(no_keychain=True), fc.Config(user_id="max")) == "typed"


def test_keychain_get_pin(monkeypatch):
    calls = []

    def fake_run(cmd, **_kwargs):
        calls.append(cmd)
        return SimpleNamespace(returncode=0, stdout="1234\n")

    monkeypatch.setattr(fc.subprocess, "run", fake_run)
    assert fc.keychain_get_pin("svc", "acc") == "1234"
    assert calls[0] == ["security", "find-generic-password", "-s", "svc", "-a", "acc", "-w"]

    monkeypatch.setattr(fc.subprocess, "run", lambda *_a, **_k: SimpleNamespace(returncode=44, stdout=""))
    assert fc.keychain_get_pin("svc", "acc") is None


def test_resolve_keychain_requires_account():
    with pytest.raises(ConfigurationError):
        fc.resolve_keychain(SimpleNamespace(), fc.Config())


def test_ensure_product_id_precedence(monkeypatch):
    monkeypatch.setenv(fc.ENV_PRODUCT_ID, "ENV-ID")
    cfg = fc.Config()
    assert fc.ensure_product_id(cfg) == "ENV-ID"
    assert fc.ensure_product_id(cfg, "CLI-ID") == "CLI-ID"

    monkeypatch.delenv(fc.ENV_PRODUCT_ID)
    with pytest.raises(ConfigurationError, match="product ID"):
        fc.ensure_product_id(fc.Config())


def test_config_save_and_load(monkeypatch, tmp_path):
    monkeypatch.setattr(fc, "APP_DIR", tmp_path)
    monkeypatch.setattr(fc, "CFG_PATH", tmp_path / "config.json")
    monkeypatch.delenv(fc.ENV_BACKEND, raising=False)

    fc.Config(backend="python", blz="37040044", user_id="max").save()
    data = json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))
    data["legacy_field"] = "ignored"
    (tmp_path / "config.json").write_text(json.dumps(data), encoding="utf-8")

    cfg = fc.Config.load()
    assert cfg.backend == "python"
    assert cfg.blz == "37040044"

    monkeypatch.setenv(fc.ENV_BACKEND, "docker")
    assert fc.Config.load().backend == "docker"


def test_host_aqbanking_dir_default_and_override(tmp_path):
    assert fc.Config().host_aqbanking_dir == fc.DEFAULT_AQBANKING_DIR
    assert fc.Config(aqbanking_dir=str(tmp_path)).host_aqbanking_dir == tmp_path


def test_cmd_init_applies_flags(monkeypatch, capsys):
    saved = []
    monkeypatch.setattr(fbr.Config, "save", lambda self: saved.append(self))
    args = fbr.build_parser().parse_args(
        ["init", "--backend", "docker", "--blz", "37040044", "--user-id", "max", "--interactive", "--debug-tools", "on"]
    )
    cfg = fc.Config()

    assert fbr.cmd_init(args, cfg) == 0

    assert saved == [cfg]
    assert cfg.backend == "docker"
    assert cfg.blz == "37040044"
    assert cfg.non_interactive is False
    assert cfg.enable_debug_logging is True
    assert '"user_id": "max"' in capsys.readouterr().out


def test_main_init_keeps_global_backend_flag(monkeypatch, capsys):
    cfg = fc.Config()
    monkeypatch.setattr(fbr.Config, "load", lambda: cfg)
    monkeypatch.setattr(fbr.Config, "save", lambda self: None)

    assert fbr.main(["--backend", "docker", "init", "--blz", "37040044"]) == 0
    assert cfg.backend == "docker"

    assert fbr.main(["init", "--backend", "python"]) == 0
    assert cfg.backend == "python"
    assert cfg.blz == "37040044"


def test_main_batch_missing_file_exits_with_message(monkeypatch, tmp_path):
    _install(monkeypatch)
    with pytest.raises(SystemExit) as info:
        fbr.main(["batch", "--file", str(tmp_path / "missing.json")])
    assert "Cannot read batch file" in str(info.value)


def test_main_batch_invalid_json_exits_with_message(monkeypatch, tmp_path):
    _install(monkeypatch)
    batch = tmp_path / "batch.json"
    batch.write_text("{not json", encoding="utf-8")
    with pytest.raises(SystemExit) as info:
        fbr.main(["batch", "--file", str(batch)])
    assert "Invalid JSON in batch file" in str(info.value)


def test_pin_provider_asks_once(monkeypatch):
    calls = []
    monkeypatch.setattr(fbr, "get_pin", lambda args, cfg: calls.append(1) or "1234")
    provide = fbr.pin_provider(SimpleNamespace(), fc.Config())
    assert provide() == "1234"
    assert provide() == "1234"
    assert calls == [1]


def test_main_balance_prints_json(monkeypatch, capsys):
    runner, _ = _install(monkeypatch, BALANCE_OUT)

    assert fbr.main(["balance", "--account", "0532013000", "--raw"]) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["balance"] == 1234.56
    assert out["currency"] == "EUR"
    assert out["raw_output"] == BALANCE_OUT
    assert runner.calls[0].command == "aqbanking-cli"


def test_main_backend_flag_overrides_config(monkeypatch, capsys):
    _, seen = _install(monkeypatch, BALANCE_OUT)
    fbr.main(["--backend", "docker", "balance", "--account", "1"])
    assert seen == ["docker"]


def test_main_missing_account_exits_with_message(monkeypatch):
    runner, _ = _install(monkeypatch)
    with pytest.raises(SystemExit) as info:
        fbr.main(["balance"])
    assert "Account number is required" in str(info.value)
    assert runner.calls == []


def test_main_transactions_tsv(monkeypatch, capsys):
    _install(monkeypatch, TX_OUT)

    assert fbr.main(["transactions", "--account", "1", "--format", "tsv", "--max-results", "1"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "date\tamount\tcurrency\tremote_name\tremote_iban\tpurpose"
    assert lines[1] == "2024-03-01\t-12.50\tEUR\tACME\tDE02100100109307118603\tRechnung 42"
    assert lines[-1] == "Transactions: 1"


def test_main_transactions_pretty_truncates_purpose(monkeypatch, capsys):
    _install(monkeypatch, TX_OUT)
    fbr.main(["transactions", "--account", "1", "--max-purpose", "8"])
    out = capsys.readouterr().out
    assert "Counterparty" in out
    assert "Rechn..." in out
    assert "Rechnung 42" not in out


def test_main_export_writes_csv_file(monkeypatch, capsys, tmp_path):
    _install(monkeypatch, TX_OUT)
    target = tmp_path / "tx.csv"

    assert fbr.main(["export", "--account", "1", "--range", "all", "--out", str(target)]) == 0

    lines = target.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "Date,Amount,Currency,Remote Name,Purpose,Remote IBAN,Remote BIC,Transaction Code"
    assert lines[2] == "2024-03-02,100.00,EUR,,Gehalt,,,"
    assert "Exported 2 transactions" in capsys.readouterr().out


def test_main_batch_continue_on_fail(monkeypatch, capsys, tmp_path):
    _install(monkeypatch, BALANCE_OUT)
    batch = tmp_path / "batch.json"
    batch.write_text(
        json.dumps(
            {
                "items": [
                    {"resource": "account", "operation": "getBalance"},
                    {"resource": "account", "operation": "getBalance", "accountNumber": "1"},
                ]
            }
        ),
        encoding="utf-8",
    )

    assert fbr.main(["batch", "--file", str(batch), "--continue-on-fail"]) == 0

    results = json.loads(capsys.readouterr().out)
    assert results[0]["error_type"] == "ConfigurationError"
    assert results[0]["operation"] == "getBalance"
    assert results[1]["balance"] == 1234.56
