"""CLI commands driven through ``typer.testing.CliRunner`` against an in-memory catalog."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from ForgeSync import cli
from ForgeSync.catalog import Asset, UpdateInfo, UpdateStatus
from ForgeSync.logging_utils import ROOT_LOGGER_NAME
from tests.conftest import FakeCatalog, make_entry

runner = CliRunner()

BOT_CALLSIGNS = make_entry("com.harmonyzt.botcallsigns", "BotCallsigns", id="77", slug="botcallsigns")
DYNAMIC_MAPS = make_entry("com.mpstark.dynamicmaps", "Dynamic Maps", id="88", slug="dynamic-maps")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("FORGESYNC_CONFIG", raising=False)
    yield
    # CliRunner swaps stderr; drop handlers bound to the captured stream.
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "mods"
    (root / "BotCallsigns_v2.0.3").mkdir(parents=True)
    (root / "DynamicMaps-1.0.5").mkdir()
    (root / "Qx").mkdir()
    config = {
        "scan": {"install_root": str(root)},
        "overrides": {"path": str(tmp_path / "overrides.json")},
        "download": {
            "download_dir": str(tmp_path / "downloads"),
            "import_dir": str(tmp_path / "imports"),
        },
        "logging": {"level": "WARNING"},
    }
    (tmp_path / "forgesync.yaml").write_text(yaml.safe_dump(config), encoding="utf-8")
    return tmp_path


@pytest.fixture
def fake_catalog(monkeypatch: pytest.MonkeyPatch) -> FakeCatalog:
    catalog = FakeCatalog([BOT_CALLSIGNS, DYNAMIC_MAPS])
    monkeypatch.setattr(cli, "_build_catalog", lambda cfg: catalog)
    return catalog


def _args(workspace: Path, *args: str) -> list[str]:
    return [*args, "--config", str(workspace / "forgesync.yaml")]


def test_enrich_creates_registry_from_install_folders(workspace: Path, fake_catalog: FakeCatalog) -> None:
    registry = workspace / "installs.json"

    result = runner.invoke(cli.app, _args(workspace, "enrich", "--registry", str(registry)))

    assert result.exit_code == 0, result.output
    assert "Matched: 2" in result.output
    assert "Skipped: 1" in result.output
    stored = {item["install_id"]: item for item in json.loads(registry.read_text())}
    assert stored["BotCallsigns_v2.0.3"]["attributes"]["catalog_guid"] == "com.harmonyzt.botcallsigns"
    assert stored["BotCallsigns_v2.0.3"]["attributes"]["catalog_id"] == 77
    assert stored["Qx"]["attributes"] == {}


def test_imported_override_is_used_by_enrich(workspace: Path, fake_catalog: FakeCatalog) -> None:
    source = workspace / "overrides.txt"
    source.write_text("Qx -> com.mpstark.dynamicmaps\n", encoding="utf-8")

    imported = runner.invoke(cli.app, _args(workspace, "overrides", "import", str(source)))
    assert imported.exit_code == 0, imported.output
    assert "Imported 1 overrides" in imported.output

    shown = runner.invoke(cli.app, _args(workspace, "overrides", "show"))
    assert "com.mpstark.dynamicmaps" in shown.output

    registry = workspace / "installs.json"
    result = runner.invoke(cli.app, _args(workspace, "enrich", "--registry", str(registry)))
    assert "Matched: 3" in result.output
    stored = {item["install_id"]: item for item in json.loads(registry.read_text())}
    assert stored["Qx"]["attributes"]["catalog_guid"] == "com.mpstark.dynamicmaps"


def test_diagnose_prints_terms_and_match(workspace: Path, fake_catalog: FakeCatalog) -> None:
    result = runner.invoke(cli.app, _args(workspace, "diagnose", "BotCallsigns_v2.0.3"))

    assert result.exit_code == 0, result.output
    assert "com.harmonyzt.botcallsigns" in result.output
    assert "exact_name" in result.output


def test_check_and_download_updates(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    asset = Asset(url="https://cdn.example/BotCallsigns-2.1.0.zip", filename="BotCallsigns-2.1.0.zip")
    status = UpdateStatus(
        updates=(UpdateInfo("com.harmonyzt.botcallsigns", "BotCallsigns", "2.0.3", "2.1.0", catalog_id="77"),)
    )
    catalog = FakeCatalog(
        [make_entry("com.harmonyzt.botcallsigns", "BotCallsigns", id="77", assets=[asset])],
        update_status=status,
    )
    monkeypatch.setattr(cli, "_build_catalog", lambda cfg: catalog)
    registry = workspace / "installs.json"
    registry.write_text(
        json.dumps(
            [
                {
                    "install_id": "bot",
                    "folder_name": "BotCallsigns_v2.0.3",
                    "attributes": {"catalog_guid": "com.harmonyzt.botcallsigns", "version": "2.0.3"},
                }
            ]
        ),
        encoding="utf-8",
    )

    checked = runner.invoke(cli.app, _args(workspace, "check-updates", "--registry", str(registry)))
    assert checked.exit_code == 0, checked.output
    assert "Updates: 1" in checked.output
    (pairs, _platform), = catalog.calls_to("get_update_status")
    assert pairs == [("com.harmonyzt.botcallsigns", "2.0.3")]

    def fake_download(self, url, destination, policy=None, *, cancel_token=None):
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"archive")
        from ForgeSync.downloader import DownloadTask

        return DownloadTask(url=url, destination=destination, policy=policy, attempt_count=1, size=7)

    monkeypatch.setattr(cli.ResilientDownloader, "download", fake_download)
    downloaded = runner.invoke(cli.app, _args(workspace, "download-updates", "--registry", str(registry)))

    assert downloaded.exit_code == 0, downloaded.output
    assert "Succeeded: 1" in downloaded.output
    assert (workspace / "imports" / "BotCallsigns-2.1.0.zip").read_bytes() == b"archive"


def test_config_error_exits_with_code_one(tmp_path: Path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("download:\n  retries: 0\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["print-config", "--config", str(bad)])

    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_missing_install_root_exits(tmp_path: Path, fake_catalog: FakeCatalog) -> None:
    config = tmp_path / "forgesync.yaml"
    config.write_text(yaml.safe_dump({"logging": {"level": "WARNING"}}), encoding="utf-8")

    result = runner.invoke(cli.app, ["enrich", "--config", str(config), "--registry", str(tmp_path / "r.json")])

    assert result.exit_code == 1
    assert "install_root" in result.output


def test_print_config_masks_secrets(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FORGESYNC_CATALOG__API_KEY", "super-secret")

    result = runner.invoke(cli.app, _args(workspace, "print-config"))

    assert result.exit_code == 0, result.output
    assert "super-secret" not in result.output
    assert "Hash:" in result.output


def test_print_config_schema() -> None:
    result = runner.invoke(cli.app, ["print-config", "--schema"])
    assert result.exit_code == 0
    assert '"properties"' in result.output
