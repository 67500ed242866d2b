# Artifacts/canonicalize.py
# Description: Moves stored artifacts to the paths the current layout would give them.
#
# Imports
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from illust_archiver.app.core.DB_Management.Archive_DB import ArchiveDB, ArchiveDBError
from illust_archiver.app.core.Utils.Utils import ensure_directory_exists
from .models import ArtifactVersion
from .paths import PathLayout, MAX_DISAMBIGUATION
from .store import ArtifactStore
#
#######################################################################################################################
#
# Functions:

MAX_PASSES = 4


class CanonicalizeMode(str, Enum):
    MOVE = "move"            # rename the file, then update the row
    SKIP_FILE = "skip_file"  # the file was already moved by hand; only update the row


@dataclass
class CanonicalizeReport:
    moved: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: List[Tuple[int, str]] = field(default_factory=list)
    failed: List[Tuple[int, str]] = field(default_factory=list)
    passes: int = 0

    @property
    def changed(self) -> int:
        return self.moved + self.updated


class PathCanonicalizer:
    """
    Recomputes the stored path of every artifact row.

    Current rows go to their slot's canonical path, superseded rows to the content-addressed variant
    of it. A target owned by another row is disambiguated with ``~N``. Rows already at their target
    are left alone, so re-running after a completed run touches nothing.
    """

    def __init__(self, db: ArchiveDB, layout: PathLayout, previous_layout: Optional[PathLayout] = None,
                 batch_size: int = 500):
        self.db = db
        self.store = ArtifactStore(db)
        self.layout = layout
        self.previous_layout = previous_layout
        self.batch_size = batch_size

    def canonicalize(self, mode: CanonicalizeMode = CanonicalizeMode.MOVE) -> CanonicalizeReport:
        mode = CanonicalizeMode(mode)
        report = CanonicalizeReport()
        # moving one row can free the path another row was disambiguated away from
        while report.passes < MAX_PASSES:
            report.passes += 1
            changed_before = report.changed
            report.unchanged = 0
            report.skipped.clear()
            for version in self.store.iter_with_path(self.batch_size):
                self._canonicalize_one(version, mode, report)
            if report.changed == changed_before:
                break
        else:
            logger.warning(f"Paths still changing after {MAX_PASSES} passes; run canonicalize again")
        logger.info(f"Canonicalize: {report.moved} moved, {report.updated} row-only updates, "
                    f"{report.unchanged} unchanged, {len(report.skipped)} skipped, {len(report.failed)} failed")
        return report

    def _source_file(self, stored: str) -> Path:
        resolved = self.layout.resolve(stored)
        if not resolved.exists() and self.previous_layout is not None:
            return self.previous_layout.resolve(stored)
        return resolved

    def target_relative(self, version: ArtifactVersion) -> Optional[str]:
        if self.store.is_current(version):
            return self.layout.canonical_relative(version.key, version.extension)
        if not version.content_hash:
            return None
        return self.layout.superseded_relative(version.key, version.extension, version.content_hash)

    def _pick(self, base_relative: str, version: ArtifactVersion, source: Path,
              mode: CanonicalizeMode) -> Optional[str]:
        for n in range(MAX_DISAMBIGUATION + 1):
            candidate = PathLayout.disambiguated(base_relative, n)
            owner = self.store.path_owner(self.layout.to_stored(candidate))
            if owner is not None and owner.rowid != version.rowid:
                continue
            candidate_abs = self.layout.absolute(candidate)
            if (mode is CanonicalizeMode.MOVE and owner is None and candidate_abs.exists()
                    and not _same_file(candidate_abs, source)):
                continue
            return candidate
        return None

    def _canonicalize_one(self, version: ArtifactVersion, mode: CanonicalizeMode,
                          report: CanonicalizeReport) -> None:
        base = self.target_relative(version)
        if base is None:
            report.skipped.append((version.rowid, "superseded version without content hash"))
            return
        source = self._source_file(version.path)
        target = self._pick(base, version, source, mode)
        if target is None:
            report.failed.append((version.rowid, f"no free path for {base}"))
            logger.error(f"{version.key}: no free path for {base}")
            return
        target_stored = self.layout.to_stored(target)
        target_abs = self.layout.absolute(target)
        # an unchanged inline path may still point at a file under the previous base directory
        if target_stored == version.path and (not source.exists() or _same_file(source, target_abs)):
            report.unchanged += 1
            return

        if mode is CanonicalizeMode.SKIP_FILE or _same_file(source, target_abs):
            if not target_abs.is_file():
                report.skipped.append((version.rowid, f"expected file missing: {target_abs}"))
                logger.warning(f"{version.key}: expected {target_abs} to exist; row left at {version.path}")
                return
            try:
                with self.db.transaction():
                    self.store.move_path(version.rowid, target_stored)
            except ArchiveDBError as e:
                report.failed.append((version.rowid, str(e)))
                logger.error(f"{version.key}: could not update row {version.rowid}: {e}")
                return
            report.updated += 1
            logger.debug(f"{version.key}: row {version.rowid} now points at {target_stored}")
            return

        if not source.is_file():
            report.skipped.append((version.rowid, f"source file missing: {source}"))
            logger.warning(f"{version.key}: {source} is missing; run fsck")
            return
        try:
            ensure_directory_exists(target_abs.parent)
            os.rename(source, target_abs)
        except OSError as e:
            report.failed.append((version.rowid, str(e)))
            logger.error(f"{version.key}: could not move {source} to {target_abs}: {e}")
            return
        try:
            with self.db.transaction():
                self.store.move_path(version.rowid, target_stored)
        except ArchiveDBError as e:
            os.rename(target_abs, source)
            report.failed.append((version.rowid, str(e)))
            logger.error(f"{version.key}: row update failed, moved {target_abs} back: {e}")
            return
        report.moved += 1
        logger.info(f"{version.key}: moved {version.path} -> {target_stored}")


def _same_file(a: Path, b: Path) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return os.path.abspath(a) == os.path.abspath(b)

#
# End of canonicalize.py
#######################################################################################################################
