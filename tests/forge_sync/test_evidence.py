"""Evidence extraction from module bytes and install folders."""

from __future__ import annotations

import json
from pathlib import Path

from hypothesis import given, settings
from hypothesis import strategies as st

from ForgeSync.config.models import ScanConfig
from ForgeSync.evidence import (
    EvidenceItem,
    aggregate_module_evidence,
    collect_install_evidence,
    extract_module_evidence,
    pick_best_identifier,
)


def _plugin(guid: str, name: str, version: str) -> bytes:
    return f'BepInPlugin("{guid}", "{name}", "{version}")'.encode("latin-1")


def test_structured_declaration_wins() -> None:
    data = b"\x01\x02 header " + _plugin("com.harmonyzt.botcallsigns", "BotCallsigns", "2.0.3") + b" tail"
    found = extract_module_evidence(data)
    assert found.guid == "com.harmonyzt.botcallsigns"
    assert found.display_name == "BotCallsigns"
    assert found.version == "2.0.3"
    assert found.match_type == "structured"


def test_shortest_structured_identifier_is_chosen() -> None:
    data = _plugin("com.author.modextras", "Extras", "1.0.0") + b" " + _plugin("com.author.mod", "Mod", "1.1.0")
    found = extract_module_evidence(data)
    assert (found.guid, found.version, found.display_name) == ("com.author.mod", "1.1.0", "Mod")


def test_versioned_slug_token_beats_distant_com_token() -> None:
    data = b"com.unity.postprocessing" + b" " * 300 + b"me.sol.sain 4.3.1"
    found = extract_module_evidence(data)
    assert found.guid == "me.sol.sain"
    assert found.version == "4.3.1"
    assert found.match_type == "pattern"


def test_version_strings_are_not_identifiers() -> None:
    found = extract_module_evidence(b"release v4.7.1 build 2024")
    assert found.guid is None
    assert found.is_empty


def test_identifier_split_by_nul_padding_is_rejoined() -> None:
    data = b"com\x00\x00.knotscripts\x00.taskautomation\x00\x001.2.3"
    found = extract_module_evidence(data)
    assert found.guid == "com.knotscripts.taskautomation"
    assert found.version == "1.2.3"


def test_com_token_pairs_with_assembly_version() -> None:
    data = (
        b'[assembly: AssemblyTitle("Gilded Key Storage")] com.drakiaxyz.gildedkeystorage'
        + b" " * 300
        + b'AssemblyVersion("2.0.4")'
    )
    found = extract_module_evidence(data)
    assert found.guid == "com.drakiaxyz.gildedkeystorage"
    assert found.version == "2.0.4"
    assert found.display_name == "Gilded Key Storage"


def test_empty_input_yields_empty_evidence() -> None:
    assert extract_module_evidence(b"").is_empty


@settings(max_examples=50)
@given(st.binary(max_size=512))
def test_extraction_never_raises(data: bytes) -> None:
    extract_module_evidence(data)


def test_pick_best_identifier_prefers_reverse_domain_shape() -> None:
    assert pick_best_identifier(["Mod", "com.b.mod", "com.a.mod"]) == "com.a.mod"
    assert pick_best_identifier(["OnlyName"]) == "OnlyName"
    assert pick_best_identifier([None, ""]) is None


def test_aggregation_ranks_structured_hits_first() -> None:
    items = [
        EvidenceItem("module", "a.dll", guid="com.lib.shared", version="1.0.0", confidence_tag="pattern"),
        EvidenceItem("module", "b.dll", guid="com.lib.shared", confidence_tag="pattern"),
        EvidenceItem("module", "c.dll", guid="com.author.realmod", version="3.2.1", display_name="Real Mod", confidence_tag="structured"),
    ]
    best = aggregate_module_evidence(items)
    assert best is not None
    assert best.guid == "com.author.realmod"
    assert best.version == "3.2.1"
    assert best.display_name == "Real Mod"


def test_aggregation_breaks_ties_on_version_presence() -> None:
    items = [
        EvidenceItem("module", "a.dll", guid="com.a.first", confidence_tag="pattern"),
        EvidenceItem("module", "b.dll", guid="com.a.second", version="1.0.0", confidence_tag="pattern"),
    ]
    best = aggregate_module_evidence(items)
    assert best is not None and best.guid == "com.a.second"
    assert aggregate_module_evidence([]) is None


def _write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def test_collect_install_evidence_prefers_modules_over_manifest(tmp_path: Path) -> None:
    folder = "harmonyzt-BotCallsigns-2.0.3"
    root = tmp_path / folder
    _write(root / "BepInEx" / "plugins" / "BotCallsigns.dll", _plugin("com.harmonyzt.botcallsigns", "BotCallsigns", "2.0.3"))
    _write(
        root / "user" / "mods" / "BotCallsigns" / "package.json",
        json.dumps({"name": "bot-callsigns-server", "version": "9.9.9"}).encode(),
    )

    evidence = collect_install_evidence(root, folder)

    assert evidence.guid == "com.harmonyzt.botcallsigns"
    assert evidence.version == "2.0.3"
    assert evidence.display_name == "BotCallsigns"
    assert [item.source_kind for item in evidence.evidence_items] == ["module", "manifest"]
    assert evidence.guesses == ["com.harmonyzt.botcallsigns"]
    assert evidence.module_display_names() == ["BotCallsigns"]


def test_manifest_fills_missing_fields_but_never_the_identifier(tmp_path: Path) -> None:
    folder = "Croupier_2_0_4"
    root = tmp_path / folder
    _write(root / "package.json", json.dumps({"name": "Croupier", "version": "2.0.4"}).encode())

    evidence = collect_install_evidence(root, folder)

    assert evidence.guid is None
    assert evidence.version == "2.0.4"
    assert evidence.display_name == "Croupier"
    assert evidence.guesses == []


def test_oversized_modules_are_skipped(tmp_path: Path) -> None:
    root = tmp_path / "Big"
    _write(root / "Big.dll", _plugin("com.big.module", "Big", "1.0.0") + b" " * 2048)

    evidence = collect_install_evidence(root, "Big", scan_config=ScanConfig(module_max_bytes=1024))

    assert evidence.guid is None


def test_unreadable_manifest_is_ignored(tmp_path: Path) -> None:
    root = tmp_path / "Broken"
    _write(root / "package.json", b"{not json")

    evidence = collect_install_evidence(root, "Broken")

    assert evidence.version is None
    assert evidence.evidence_items == []
