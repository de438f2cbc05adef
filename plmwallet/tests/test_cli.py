"""
Tests for CLI commands.
"""

import pytest
from plmcore.errors import BackendConnectionError
from plmcore.keys import generate_keypair
from plmcore.models import BackendMode, ChatConfig
from typer.testing import CliRunner

from plmwallet import cli
from plmwallet.config import Settings
from plmwallet.wallet.service import ChatWallet
from plmwallet.wallet.storage import JsonFileStore, save_config

runner = CliRunner()

KEY_ONE_WIF = "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"
KEY_ONE_PUBKEY = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("PLMCHAT_DATA_DIR", str(tmp_path))
    return tmp_path


def test_settings_from_env(data_dir, monkeypatch):
    monkeypatch.setenv("PLMCHAT_LOG_LEVEL", "DEBUG")
    settings = Settings()
    assert settings.store_path == data_dir / "store.json"
    assert settings.log_level == "DEBUG"


def test_generate():
    result = runner.invoke(cli.app, ["generate"])
    assert result.exit_code == 0
    assert "WIF:" in result.output
    assert "Public key:" in result.output


def test_address():
    result = runner.invoke(cli.app, ["address", "--wif", KEY_ONE_WIF])
    assert result.exit_code == 0
    assert KEY_ONE_PUBKEY in result.output


def test_address_invalid_wif():
    result = runner.invoke(cli.app, ["address", "--wif", "nonsense"])
    assert result.exit_code == 1


class TestBuildConfig:
    def test_defaults(self, tmp_path):
        store = JsonFileStore(tmp_path / "s.json")
        config = cli._build_config(store, None, None, None, None, None, None)
        assert config == ChatConfig()

    def test_stored_config_with_overrides(self, tmp_path):
        store = JsonFileStore(tmp_path / "s.json")
        save_config(store, ChatConfig(host="stored.example", fee_rate=3))

        config = cli._build_config(store, None, None, 50001, None, None, False)

        assert config.host == "stored.example"
        assert config.port == 50001
        assert config.use_ssl is False
        assert config.fee_rate == 3

    def test_rpc_mode_default_port(self, tmp_path):
        config = cli._build_config(
            JsonFileStore(tmp_path / "s.json"), BackendMode.RPC, None, None, "u", "p", None
        )
        assert config.mode == BackendMode.RPC
        assert config.port == 2332
        assert config.user == "u"


def test_balance_command(data_dir, backend, monkeypatch):
    keypair = generate_keypair()
    backend.fund(keypair.address(), 150_000_000, height=5)
    backend.fund(keypair.address(), 1_000, height=0)
    monkeypatch.setattr(
        cli, "ChatWallet", lambda store: ChatWallet(store, backend_factory=lambda config: backend)
    )

    result = runner.invoke(cli.app, ["balance", "--wif", keypair.to_wif()])

    assert result.exit_code == 0
    assert "Balance:   1.50001000 PLM" in result.output
    assert "Pending:   0.00001000 PLM" in result.output
    assert backend.closed
    assert (data_dir / "store.json").exists()


def test_backend_failure_exits(data_dir, backend, monkeypatch):
    backend.fail_with = BackendConnectionError("refused")
    monkeypatch.setattr(
        cli, "ChatWallet", lambda store: ChatWallet(store, backend_factory=lambda config: backend)
    )

    result = runner.invoke(cli.app, ["contacts", "--wif", generate_keypair().to_wif()])
    assert result.exit_code == 1
