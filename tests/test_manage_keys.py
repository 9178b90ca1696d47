import pytest
from click.testing import CliRunner

from config import settings
from key_store import JsonFileKeyStore
from manage_keys import cli


@pytest.fixture()
def key_file(tmp_path, monkeypatch):
    path = tmp_path / "keys.json"
    monkeypatch.setattr(settings, "KEY_STORE_PATH", str(path))
    return path


@pytest.fixture()
def runner():
    return CliRunner()


def _run(runner, *args):
    return runner.invoke(cli, ["--backend", "json", *args])


def test_add_and_list(runner, key_file):
    result = _run(runner, "add", "K2", "7d")
    assert result.exit_code == 0
    assert "Added key" in result.output
    assert JsonFileKeyStore(key_file).get("K2").license_type == "7d"

    listing = _run(runner, "list")
    assert listing.exit_code == 0
    assert "K2" in listing.output


def test_add_duplicate_fails(runner, key_file):
    _run(runner, "add", "K2", "7d")
    result = _run(runner, "add", "K2", "7d")
    assert result.exit_code == 1
    assert "already exists" in result.output


def test_add_unknown_type_fails(runner, key_file):
    result = _run(runner, "add", "K2", "forever")
    assert result.exit_code == 1
    assert JsonFileKeyStore(key_file).get("K2") is None


def test_remove(runner, key_file):
    _run(runner, "add", "K2", "7d")
    result = _run(runner, "remove", "K2")
    assert result.exit_code == 0
    assert JsonFileKeyStore(key_file).get("K2") is None


def test_remove_missing_key_is_soft(runner, key_file):
    result = _run(runner, "remove", "ghost")
    assert result.exit_code == 0
    assert "nothing to remove" in result.output


def test_sweep(runner, key_file):
    store = JsonFileKeyStore(key_file)
    store.create("old", "1m")
    store.bind_and_activate("old", "dev-A", 1_000, 60_000)

    result = _run(runner, "sweep")
    assert result.exit_code == 0
    assert "Purged 1" in result.output
    assert store.get("old") is None
