"""Enrichment pass, folder resolution, and the JSON install registry."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Mapping

import pytest

from ForgeSync.enrich import (
    EnrichmentPass,
    build_match_attributes,
    resolve_install_folder,
)
from ForgeSync.errors import ConfigError
from ForgeSync.matching import CandidateMatcher, MatchResult
from ForgeSync.registry import (
    AttributeSink,
    InstallRecord,
    JsonInstallRegistry,
    records_from_folders,
)
from ForgeSync.scanner import FilesystemInstallScanner
from tests.conftest import FakeCatalog, make_entry

BOT_CALLSIGNS = make_entry(
    "com.harmonyzt.botcallsigns", "BotCallsigns", id="77", slug="botcallsigns", owner="harmonyzt"
)
CROUPIER = make_entry(
    "com.turbodestroyer.croupier",
    "Croupier - loadout generator + flea quicksell",
    id="501",
    slug="croupier-loadout-generator-flea-quicksell",
)


@pytest.fixture
def install_root(tmp_path: Path) -> Path:
    root = tmp_path / "mods"
    plugin_dir = root / "harmonyzt-BotCallsigns-2.0.3" / "BepInEx" / "plugins"
    plugin_dir.mkdir(parents=True)
    (plugin_dir / "BotCallsigns.dll").write_bytes(
        b'BepInPlugin("com.harmonyzt.botcallsigns", "BotCallsigns", "2.0.3")'
    )
    (root / "Croupier_2_0_4").mkdir()
    (root / "Mystery").mkdir()
    return root


def _pass(install_root: Path, sink=None) -> EnrichmentPass:
    matcher = CandidateMatcher(FakeCatalog([BOT_CALLSIGNS, CROUPIER]))
    return EnrichmentPass(matcher, FilesystemInstallScanner(install_root), sink)


def test_resolve_install_folder_strategies() -> None:
    folders = ["harmonyzt-BotCallsigns-2.0.3", "Croupier_2_0_4", "DrakiaXYZ-GildedKeyStorage-2.0.4"]

    assert resolve_install_folder(InstallRecord("1", folder_name="Croupier_2_0_4"), folders) == "Croupier_2_0_4"
    assert resolve_install_folder(InstallRecord("2", folder_name="croupier_2_0_4"), folders) == "Croupier_2_0_4"
    assert resolve_install_folder(InstallRecord("3", name="Croupier"), folders) == "Croupier_2_0_4"
    assert (
        resolve_install_folder(InstallRecord("4", name="GildedKeyStorage"), folders)
        == "DrakiaXYZ-GildedKeyStorage-2.0.4"
    )
    assert resolve_install_folder(InstallRecord("5", name="Qx"), folders) is None
    assert resolve_install_folder(InstallRecord("6", name="Croupier"), []) is None


def test_build_match_attributes_drops_empty_values() -> None:
    attributes = build_match_attributes(MatchResult(CROUPIER, 92, "slug"), "2.0.4")

    assert attributes == {
        "catalog_guid": "com.turbodestroyer.croupier",
        "catalog_id": 501,
        "catalog_slug": "croupier-loadout-generator-flea-quicksell",
        "catalog_name": "Croupier - loadout generator + flea quicksell",
        "catalog_detail_url": "https://forge.example/mod/501",
        "version": "2.0.4",
        "source": "forge:com.turbodestroyer.croupier",
    }


def test_record_version_is_used_without_evidence_version() -> None:
    record = InstallRecord("1", version="1.0.0")
    attributes = build_match_attributes(MatchResult(BOT_CALLSIGNS, 95, "exact_name"), None, record)
    assert attributes["version"] == "1.0.0"


def test_run_writes_attributes_to_registry(install_root: Path, tmp_path: Path) -> None:
    registry = JsonInstallRegistry(tmp_path / "installs.json")
    for record in (
        InstallRecord("bot", folder_name="harmonyzt-BotCallsigns-2.0.3"),
        InstallRecord("croupier", name="Croupier"),
        InstallRecord("mystery", folder_name="Mystery"),
    ):
        registry.upsert(record)
    assert isinstance(registry, AttributeSink)

    report = _pass(install_root, registry).run(registry.records())

    assert (report.matched, report.skipped) == (2, 1)
    by_id = {o.install_id: o for o in report.outcomes}
    assert by_id["bot"].match.method == "identifier"
    assert by_id["bot"].attributes["version"] == "2.0.3"
    assert by_id["croupier"].folder_name == "Croupier_2_0_4"
    assert by_id["croupier"].match.method == "slug"
    assert "version" not in by_id["croupier"].attributes
    assert not by_id["mystery"].matched

    stored = {item["install_id"]: item for item in json.loads((tmp_path / "installs.json").read_text())}
    assert stored["bot"]["attributes"]["catalog_id"] == 77
    assert stored["bot"]["attributes"]["source"] == "forge:com.harmonyzt.botcallsigns"
    assert stored["mystery"]["attributes"] == {}


def test_record_without_folder_still_matches_by_name(tmp_path: Path) -> None:
    empty_root = tmp_path / "empty"
    empty_root.mkdir()

    report = _pass(empty_root).run([InstallRecord("x", name="BotCallsigns")])

    outcome = report.outcomes[0]
    assert outcome.folder_name is None
    assert outcome.match is not None and outcome.match.method == "exact_name"


class _FlakySink:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.written: Dict[str, Mapping[str, Any]] = {}

    def set_attributes(self, install_id: str, attributes: Mapping[str, Any]) -> None:
        if install_id == "bot":
            raise self.error
        self.written[install_id] = dict(attributes)


@pytest.mark.parametrize("error", [OSError("disk full"), ValueError("attribute rejected")])
def test_failure_on_one_install_does_not_stop_the_pass(install_root: Path, error: Exception) -> None:
    sink = _FlakySink(error)
    records = [
        InstallRecord("bot", folder_name="harmonyzt-BotCallsigns-2.0.3"),
        InstallRecord("croupier", folder_name="Croupier_2_0_4"),
    ]

    report = _pass(install_root, sink).run(records)

    assert report.outcomes[0].error == str(error)
    assert not report.outcomes[0].matched
    assert report.outcomes[1].matched
    assert list(sink.written) == ["croupier"]


class _BrokenLookupCatalog(FakeCatalog):
    def lookup_by_identifier(self, identifier: str):
        if identifier == "com.harmonyzt.botcallsigns":
            raise ValueError("malformed catalog payload")
        return super().lookup_by_identifier(identifier)


def test_unexpected_catalog_error_is_isolated_to_one_install(install_root: Path) -> None:
    matcher = CandidateMatcher(_BrokenLookupCatalog([BOT_CALLSIGNS, CROUPIER]))
    enrichment = EnrichmentPass(matcher, FilesystemInstallScanner(install_root))
    records = [
        InstallRecord("bot", folder_name="harmonyzt-BotCallsigns-2.0.3"),
        InstallRecord("croupier", folder_name="Croupier_2_0_4"),
    ]

    report = enrichment.run(records)

    assert report.outcomes[0].error == "malformed catalog payload"
    assert report.outcomes[1].matched
    assert report.outcomes[1].match.entry.guid == "com.turbodestroyer.croupier"


def test_diagnose_reports_evidence_terms_and_match(install_root: Path) -> None:
    diagnosis = _pass(install_root).diagnose("Croupier_2_0_4")

    assert diagnosis.terms[0] == "Croupier"
    assert "Croupier 2.0.4" in diagnosis.terms
    assert diagnosis.override is None
    assert diagnosis.match is not None
    assert diagnosis.match.entry.guid == "com.turbodestroyer.croupier"


def test_registry_round_trip_and_merge(tmp_path: Path) -> None:
    path = tmp_path / "installs.json"
    path.write_text(
        json.dumps(
            [
                {"id": "a", "name": "Mod A", "attributes": {"keep": 1}},
                {"folder_name": "ModB"},
                {"name": "no id"},
                "junk",
            ]
        ),
        encoding="utf-8",
    )
    registry = JsonInstallRegistry(path)
    assert len(registry) == 2
    assert registry.get("ModB").folder_name == "ModB"

    registry.set_attributes("a", {"catalog_guid": "com.a.mod", "catalog_owner": None})
    reloaded = JsonInstallRegistry(path)
    assert reloaded.get("a").attributes == {"keep": 1, "catalog_guid": "com.a.mod"}


def test_registry_rejects_non_array(tmp_path: Path) -> None:
    path = tmp_path / "installs.json"
    path.write_text('{"a": 1}', encoding="utf-8")
    with pytest.raises(ConfigError):
        JsonInstallRegistry(path)


def test_records_from_folders() -> None:
    records = records_from_folders(["A", "B"])
    assert [(r.install_id, r.folder_name) for r in records] == [("A", "A"), ("B", "B")]
