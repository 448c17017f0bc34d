from pathlib import Path

import pytest

from gameserver.config import ServerRegistry, Settings, build_registry, load_servers
from gameserver.errors import NotConfigured

EXAMPLE = Path(__file__).parent.parent / "servers.example.yml"

MINIMAL = """
servers:
  alpha:
    label: alpha-server
    region: nrt
    plan: vc2-2c-4gb
    snapshot_prefix: alpha-
"""


def _server(**overrides):
    server = {"label": "alpha-server", "region": "nrt", "plan": "vc2-2c-4gb", "snapshot_prefix": "alpha-"}
    server.update(overrides)
    return server


def test_load_example_config():
    registry = load_servers(EXAMPLE)

    assert isinstance(registry, ServerRegistry)
    assert len(registry) == 2
    alpha = registry.resolve("alpha")
    assert alpha.ssh_user == "root"
    assert alpha.artifacts["world"].is_directory is True
    assert alpha.artifacts["ops"].is_directory is False
    assert alpha.artifacts["world"].description == "World save"
    beta = registry.resolve("beta")
    assert beta.stop_command is None
    assert beta.artifacts == {}
    assert registry.settings.reminder_time == "23:00"


def test_load_config_defaults(tmp_path):
    path = tmp_path / "servers.yml"
    path.write_text(MINIMAL, encoding="utf-8")

    registry = load_servers(path)

    assert registry.settings == Settings()
    assert registry.settings.snapshot_retention == 3
    assert registry.resolve("alpha").description == ""


def test_env_overrides(monkeypatch, tmp_path):
    path = tmp_path / "servers.yml"
    path.write_text(MINIMAL + "settings:\n  snapshot_retention: 4\n", encoding="utf-8")

    monkeypatch.setenv("SNAPSHOT_RETENTION", "2")
    monkeypatch.setenv("SNAPSHOT_READY_TIMEOUT_SEC", "900.5")
    monkeypatch.setenv("FILE_SERVER_BASE_URL", "https://files.example.com/files")

    settings = load_servers(path).settings

    assert settings.snapshot_retention == 2
    assert settings.snapshot_ready_timeout_sec == 900.5
    assert settings.file_server_base_url == "https://files.example.com/files"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_servers(tmp_path / "nope.yml")


def test_empty_file_has_no_servers(tmp_path):
    path = tmp_path / "servers.yml"
    path.write_text("", encoding="utf-8")

    assert len(load_servers(path)) == 0


@pytest.mark.parametrize("data", [
    {"servers": {"alpha": {"region": "nrt", "plan": "p", "snapshot_prefix": "a-"}}},
    {"servers": {"alpha": _server()}, "settings": {"snapshot_retention": 0}},
    {"servers": {"alpha_1": _server()}},
    {"servers": {"alpha": _server(downloadable_files={"w": {"path": "/w", "type": "folder"}})}},
    {"servers": {"alpha": _server()}, "settings": {"reminder_time": "25:00"}},
])
def test_schema_errors(data):
    with pytest.raises(ValueError, match="validation failed"):
        build_registry(data)


def test_duplicate_snapshot_prefix_rejected():
    data = {"servers": {"alpha": _server(), "beta": _server(label="beta-server")}}
    with pytest.raises(ValueError, match="snapshot_prefix"):
        build_registry(data)


def test_scope_resolution():
    registry = build_registry({"servers": {
        "alpha": _server(),
        "beta": _server(label="beta-server", snapshot_prefix="beta-", allowed_scopes=[42, "ops"]),
    }})

    assert registry.names_for_scope(None) == ["alpha"]
    assert registry.names_for_scope("42") == ["alpha", "beta"]
    assert registry.resolve("beta", "ops").label == "beta-server"
    with pytest.raises(NotConfigured, match='"beta" is not configured'):
        registry.resolve("beta", "7")
    with pytest.raises(NotConfigured):
        registry.resolve("gamma")
