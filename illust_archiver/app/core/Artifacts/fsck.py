# Artifacts/fsck.py
# Description: Consistency check between the artifact store and the files on disk.
#
# Imports
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List
#
# 3rd-Party Imports
from loguru import logger
from tqdm import tqdm
#
# Local Imports
from illust_archiver.app.core.DB_Management.Archive_DB import ArchiveDB
from .models import ArtifactKey
from .paths import PathLayout
from .store import ArtifactStore
#
#######################################################################################################################
#
# Functions:


class FsckMode(str, Enum):
    REPORT_ONLY = "report_only"
    REPORT_AND_CLEAR = "report_and_clear"


@dataclass
class FsckFinding:
    rowid: int
    key: ArtifactKey
    path: str
    resolved: Path
    cleared: bool = False


class ConsistencyChecker:
    def __init__(self, db: ArchiveDB, layout: PathLayout, batch_size: int = 500):
        self.db = db
        self.store = ArtifactStore(db)
        self.layout = layout
        self.batch_size = batch_size

    def fsck(self, mode: FsckMode = FsckMode.REPORT_ONLY, progress: bool = False) -> List[FsckFinding]:
        """
        Report every stored path whose file is missing.

        Rows are streamed in batches. With ``REPORT_AND_CLEAR`` each missing row has its path and
        download date nulled in its own transaction, so the slot is picked up as missing by the next
        download run.
        """
        mode = FsckMode(mode)
        findings: List[FsckFinding] = []
        checked = 0
        total = self.store.count(with_path_only=True) if progress else None
        for version in tqdm(self.store.iter_with_path(self.batch_size), total=total, unit="file",
                            desc="Checking", disable=not progress, ascii=True):
            checked += 1
            resolved = self.layout.resolve(version.path)
            if resolved.is_file():
                continue
            finding = FsckFinding(version.rowid, version.key, version.path, resolved)
            if mode is FsckMode.REPORT_AND_CLEAR:
                with self.db.transaction():
                    self.store.clear_path(version.rowid)
                finding.cleared = True
                logger.warning(f"fsck: cleared {version.key} (row {version.rowid}), file missing: {resolved}")
            else:
                logger.info(f"fsck: missing file for {version.key} (row {version.rowid}): {resolved}")
            findings.append(finding)
        logger.info(f"fsck checked {checked} stored paths, {len(findings)} missing")
        return findings

#
# End of fsck.py
#######################################################################################################################
