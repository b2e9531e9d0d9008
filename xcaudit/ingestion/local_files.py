"""Local source intake with vendored-library filtering.

Walks a file or directory and yields SourceUnits for the engine,
skipping third-party library trees, tests and scripts, and stopping at
the configured file cap.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Iterator

from xcaudit.core.config import get_settings
from xcaudit.core.types import SourceUnit

logger = logging.getLogger(__name__)

# Path prefixes of vendored code (relative, lowercased)
_EXCLUDED_PREFIXES = (
    "@",
    "lib/",
    "node_modules/",
    "open-zeppelin/",
    "solmate/",
    "solady/",
    "permit2/",
    "forge-std/",
    ".deps/",
    "test/",
    "script/",
    "target/",
)

# Third-party library names matched anywhere in the path
_EXCLUDED_LIBRARIES = (
    "openzeppelin",
    "solmate",
    "solady",
    "permit2",
    "forge-std",
    "hardhat",
    "foundry",
)

# Directories never worth descending into
_SKIP_DIRS = {
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    "artifacts", "cache", "out", "typechain-types",
}


def should_exclude_file(path: str) -> bool:
    """True when a relative path points into vendored or non-production code."""
    lower = path.replace("\\", "/").lower()
    while lower.startswith("./"):
        lower = lower[2:]
    if any(lower.startswith(prefix) for prefix in _EXCLUDED_PREFIXES):
        return True
    return any(lib in lower for lib in _EXCLUDED_LIBRARIES)


def _walk(root: Path, extensions: set[str], apply_filter: bool) -> Iterator[tuple[Path, str]]:
    """Yield (path, relative posix path) pairs in sorted order, lazily.

    Skipped and vendored directories are pruned before descending.
    """
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        rel_dir = base.relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else rel_dir + "/"
        kept = []
        for name in sorted(dirnames):
            if name in _SKIP_DIRS:
                continue
            if apply_filter and should_exclude_file(prefix + name + "/"):
                logger.debug("Skipping vendored directory %s%s", prefix, name)
                continue
            kept.append(name)
        dirnames[:] = kept
        for name in sorted(filenames):
            if os.path.splitext(name)[1] in extensions:
                yield base / name, prefix + name


def load_source_units(
    path: str | Path,
    max_files: int | None = None,
    extensions: Iterable[str] | None = None,
    apply_filter: bool | None = None,
) -> list[SourceUnit]:
    """Collect contract sources under ``path`` as an ordered batch.

    A single file is returned as-is, whatever its location. Directory
    walks are sorted, so the same tree always yields the same batch.

    Raises:
        FileNotFoundError: ``path`` does not exist.
    """
    settings = get_settings()
    limit = max_files if max_files is not None else settings.max_files
    suffixes = set(extensions if extensions is not None else settings.source_extensions)
    use_filter = apply_filter if apply_filter is not None else settings.apply_path_filter

    root = Path(path)
    if not root.exists():
        raise FileNotFoundError(f"No such file or directory: {root}")

    if root.is_file():
        return [
            SourceUnit(
                name=root.name,
                path=root.name,
                text=root.read_text(encoding="utf-8", errors="replace"),
            )
        ]

    units: list[SourceUnit] = []
    for fpath, rel in _walk(root, suffixes, use_filter):
        if use_filter and should_exclude_file(rel):
            logger.debug("Skipping vendored file %s", rel)
            continue
        if len(units) >= limit:
            logger.warning("File cap of %d reached under %s; remaining files skipped", limit, root)
            break
        try:
            text = fpath.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Failed to read %s: %s", rel, exc)
            continue
        units.append(SourceUnit(name=fpath.name, path=rel, text=text))

    logger.info("Found %d source files in %s", len(units), root)
    return units
