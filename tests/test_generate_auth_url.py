import importlib.util
from pathlib import Path

import pytest

SCRIPT_PATH = Path(__file__).resolve().parent.parent / "scripts" / "generate_auth_url.py"


@pytest.fixture
def generate_auth_url(monkeypatch):
    monkeypatch.setenv("KICK_CLIENT_ID", "cid")
    monkeypatch.setenv("KICK_CLIENT_SECRET", "csecret")
    spec = importlib.util.spec_from_file_location("generate_auth_url", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_printed_curl_expands_app_secret(generate_auth_url, capsys):
    assert generate_auth_url.main() == 0

    out = capsys.readouterr().out
    assert '-H "Kick-App-Secret: $KICK_APP_SECRET"' in out
    assert "'Kick-App-Secret: $KICK_APP_SECRET'" not in out
    assert "code_verifier" in out


def test_missing_credentials_reported(generate_auth_url, monkeypatch, capsys):
    monkeypatch.delenv("KICK_CLIENT_ID")

    assert generate_auth_url.main() == 1
    assert "KICK_CLIENT_ID" in capsys.readouterr().out
