"""Tests for local source intake and vendored-path filtering."""

from __future__ import annotations

import os

import pytest

from xcaudit.ingestion import local_files
from xcaudit.ingestion.local_files import load_source_units, should_exclude_file


def _write(root, rel: str, text: str = "contract X {}") -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


@pytest.fixture
def project(tmp_path):
    _write(tmp_path, "src/Vault.sol", "contract Vault {}")
    _write(tmp_path, "src/core/Pool.sol", "contract Pool {}")
    _write(tmp_path, "lib/forge-std/src/Test.sol")
    _write(tmp_path, "node_modules/@openzeppelin/contracts/ERC20.sol")
    _write(tmp_path, "test/Vault.t.sol")
    _write(tmp_path, "src/README.md", "# not a contract")
    return tmp_path


class TestShouldExcludeFile:
    @pytest.mark.parametrize(
        "path",
        [
            "lib/openzeppelin-contracts/token/ERC20.sol",
            "@openzeppelin/contracts/access/Ownable.sol",
            "node_modules/solmate/src/tokens/ERC20.sol",
            "./test/Vault.t.sol",
            "script/Deploy.s.sol",
            ".deps/npm/permit2/Permit2.sol",
            "src\\vendor\\solady\\SafeTransferLib.sol",
            "src/mocks/HardhatConsole.sol",
        ],
    )
    def test_vendored_and_non_production(self, path):
        assert should_exclude_file(path)

    @pytest.mark.parametrize(
        "path",
        ["src/Vault.sol", "contracts/bridge/Receiver.sol", "./src/Token.sol", "deps/Local.sol"],
    )
    def test_production_code(self, path):
        assert not should_exclude_file(path)


class TestLoadSourceUnits:
    def test_directory_walk_is_filtered_and_sorted(self, project):
        units = load_source_units(project)
        assert [u.path for u in units] == ["src/Vault.sol", "src/core/Pool.sol"]
        assert units[0].name == "Vault.sol"
        assert units[0].text == "contract Vault {}"

    def test_filter_can_be_disabled(self, project):
        units = load_source_units(project, apply_filter=False)
        assert [u.path for u in units] == [
            "lib/forge-std/src/Test.sol",
            "src/Vault.sol",
            "src/core/Pool.sol",
            "test/Vault.t.sol",
        ]

    def test_file_cap(self, project):
        units = load_source_units(project, max_files=1)
        assert [u.path for u in units] == ["src/Vault.sol"]

    def test_extensions(self, project):
        units = load_source_units(project, extensions=[".md"])
        assert [u.path for u in units] == ["src/README.md"]

    def test_single_file_is_never_filtered(self, project):
        units = load_source_units(project / "lib" / "forge-std" / "src" / "Test.sol")
        assert [(u.name, u.path) for u in units] == [("Test.sol", "Test.sol")]

    def test_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_source_units(tmp_path / "nope")

    def test_settings_supply_defaults(self, project, monkeypatch):
        from xcaudit.core.config import get_settings

        monkeypatch.setenv("XCAUDIT_MAX_FILES", "1")
        get_settings.cache_clear()
        assert len(load_source_units(project)) == 1


class TestDirectoryPruning:
    @pytest.fixture
    def visited(self, monkeypatch):
        seen: list[str] = []
        real_walk = os.walk

        def recording_walk(top, *args, **kwargs):
            for dirpath, dirnames, filenames in real_walk(top, *args, **kwargs):
                seen.append(os.path.relpath(dirpath, top).replace(os.sep, "/"))
                yield dirpath, dirnames, filenames

        monkeypatch.setattr(local_files.os, "walk", recording_walk)
        return seen

    def test_skipped_and_vendored_trees_are_never_entered(self, project, visited):
        load_source_units(project)
        assert visited == [".", "src", "src/core"]

    def test_skip_dirs_are_pruned_without_filter(self, project, visited):
        load_source_units(project, apply_filter=False)
        assert not any(d.startswith("node_modules") for d in visited)
        assert "lib/forge-std/src" in visited

    def test_walk_stops_at_file_cap(self, project, visited):
        load_source_units(project, max_files=1, apply_filter=False)
        assert visited[-1] == "src"
        assert "test" not in visited
