# Artifacts/download.py
# Description: Decides and performs fetch/keep/supersede actions for attachment slots.
#
# Imports
import os
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, List, Dict, BinaryIO, Sequence, Tuple
#
# 3rd-Party Imports
from loguru import logger
from tqdm import tqdm
#
# Local Imports
from illust_archiver.app.core.DB_Management.Archive_DB import ArchiveDB, ArchiveDBError, ConflictError
from illust_archiver.app.core.Fetchers.fetch_types import FetchError
from illust_archiver.app.core.Utils.Utils import (compute_sha256, get_current_utc_timestamp_iso, parse_timestamp,
                                                  ensure_directory_exists)
from .exceptions import ArtifactError, DownloadError, PathCollisionError
from .models import (ArtifactKey, ArtifactVersion, AttachmentDescriptor, Classification, ExistingPolicy,
                     ReconcileAction, ReconcileResult)
from .paths import PathLayout, MAX_DISAMBIGUATION
from .store import ArtifactStore
#
#######################################################################################################################
#
# Functions:

Downloader = Callable[[AttachmentDescriptor, BinaryIO], None]


class SlotLocks:
    """One lock per artifact slot, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[ArtifactKey, threading.Lock] = {}

    def for_key(self, key: ArtifactKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class _RenameJournal:
    """Filesystem renames performed inside a store transaction, undone in reverse if it fails."""

    def __init__(self):
        self._done: List[Tuple[Path, Path]] = []

    def rename(self, src: Path, dst: Path) -> None:
        ensure_directory_exists(dst.parent)
        if dst.exists():
            raise FileExistsError(f"Refusing to overwrite {dst}")
        os.rename(src, dst)
        self._done.append((src, dst))

    def publish(self, tmp_path: Path, dst: Path) -> None:
        # dst is vacant at this point, so the published file is always a new inode
        os.replace(tmp_path, dst)
        self._done.append((tmp_path, dst))

    def undo(self) -> None:
        for src, dst in reversed(self._done):
            try:
                os.replace(dst, src)
                logger.debug(f"Undid rename {src} -> {dst}")
            except OSError as e:
                logger.critical(f"Could not undo rename {src} -> {dst}: {e}")
        self._done.clear()


class DownloadReconciler:
    """
    Keeps each attachment slot's current version in line with the remote.

    Every reconciliation holds the slot's lock, downloads into a temporary file next to the destination,
    and applies store and filesystem changes together: store rows are written inside one transaction,
    filesystem renames happen inside that same transaction and are undone if anything fails. A failure
    therefore leaves the prior persisted state untouched.
    """

    def __init__(self, db: ArchiveDB, layout: PathLayout, downloader: Downloader, *,
                 reverify_after_days: int = 30, clock: Optional[Callable[[], str]] = None,
                 locks: Optional[SlotLocks] = None):
        self.db = db
        self.store = ArtifactStore(db)
        self.layout = layout
        self.downloader = downloader
        self.reverify_after = timedelta(days=reverify_after_days)
        self._clock = clock or get_current_utc_timestamp_iso
        self._locks = locks or SlotLocks()

    # --- classification ---
    @staticmethod
    def _metadata_differs(current: ArtifactVersion, descriptor: AttachmentDescriptor) -> bool:
        if current.url != descriptor.url:
            return True
        for name in ("size", "width", "height"):
            remote = getattr(descriptor, name)
            if remote is not None and getattr(current, name) != remote:
                return True
        return False

    def _classify(self, current: Optional[ArtifactVersion], descriptor: AttachmentDescriptor) -> Classification:
        if current is None or current.path is None:
            return Classification.MISSING
        if self._metadata_differs(current, descriptor):
            return Classification.OUTDATED
        verified = parse_timestamp(current.verified_date)
        now = parse_timestamp(self._clock()) or datetime.now(timezone.utc)
        if verified is None or now - verified >= self.reverify_after:
            return Classification.NEEDS_REVERIFY
        return Classification.FRESH

    def classify(self, descriptor: AttachmentDescriptor) -> Classification:
        return self._classify(self.store.current(descriptor.key), descriptor)

    # --- reconciliation ---
    def reconcile(self, descriptor: AttachmentDescriptor,
                  policy: ExistingPolicy = ExistingPolicy.REVERIFY) -> ReconcileResult:
        policy = ExistingPolicy(policy)
        key = descriptor.key
        with self._locks.for_key(key):
            current = self.store.current(key)
            classification = self._classify(current, descriptor)

            if classification is not Classification.MISSING:
                if policy is ExistingPolicy.SKIP or (
                        policy is ExistingPolicy.REVERIFY and classification is Classification.FRESH):
                    logger.debug(f"{key}: {classification.value}, kept")
                    return ReconcileResult(key, classification, ReconcileAction.KEPT, current.path,
                                           current.content_hash)
            try:
                result = self._download_and_apply(descriptor, current, classification, policy)
            except (FetchError, ArtifactError, ArchiveDBError, OSError) as e:
                logger.error(f"{key}: reconciliation failed: {e}")
                return ReconcileResult(key, classification, ReconcileAction.FAILED,
                                       current.path if current else None,
                                       current.content_hash if current else None, error=str(e))
        logger.info(f"{key}: {classification.value} -> {result.action.value} ({result.path})")
        return result

    def reconcile_many(self, descriptors: Sequence[AttachmentDescriptor],
                       policy: ExistingPolicy = ExistingPolicy.REVERIFY, *, workers: int = 1,
                       progress: bool = True) -> List[ReconcileResult]:
        """Reconcile many slots, optionally on a thread pool. Results keep the input order."""
        results: List[Optional[ReconcileResult]] = [None] * len(descriptors)
        with tqdm(total=len(descriptors), unit="file", desc="Reconciling", disable=not progress,
                  ascii=True) as pbar:
            if workers <= 1:
                for i, descriptor in enumerate(descriptors):
                    results[i] = self.reconcile(descriptor, policy)
                    pbar.update(1)
            else:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="artifact") as executor:
                    futures = {executor.submit(self.reconcile, d, policy): i for i, d in enumerate(descriptors)}
                    for future in as_completed(futures):
                        results[futures[future]] = future.result()
                        pbar.update(1)
        return results

    def _download_and_apply(self, descriptor: AttachmentDescriptor, current: Optional[ArtifactVersion],
                            classification: Classification, policy: ExistingPolicy) -> ReconcileResult:
        key = descriptor.key
        canonical = self.layout.canonical_relative(key, descriptor.extension)
        staging_dir = ensure_directory_exists(self.layout.absolute(canonical).parent)

        fd, tmp_name = tempfile.mkstemp(prefix=".", suffix=".part", dir=staging_dir)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as tmp_file:
                try:
                    self.downloader(descriptor, tmp_file)
                except FetchError:
                    raise
                except OSError as e:
                    raise DownloadError(f"Writing download failed: {e}", key=key) from e
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            new_hash = compute_sha256(tmp_path)
            now = self._clock()

            if current is not None and current.path is not None and policy is not ExistingPolicy.OVERWRITE:
                current_file = self.layout.resolve(current.path)
                if current_file.exists():
                    current_hash = current.content_hash or compute_sha256(current_file)
                    if current_hash == new_hash:
                        with self.db.transaction():
                            self.store.mark_verified(
                                current.rowid, now, content_hash=current_hash,
                                descriptor=descriptor if classification is Classification.OUTDATED else None)
                        return ReconcileResult(key, classification, ReconcileAction.VERIFIED, current.path, new_hash)

            return self._publish(descriptor, current, classification, canonical, tmp_path, new_hash, now)
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove temporary file {tmp_path}: {e}")

    def _free_relative(self, base_relative: str, allowed_rowid: Optional[int], key: ArtifactKey,
                       vacant_on_disk: bool) -> str:
        """First of ``base``, ``base~1``, ... that no other row owns (and, if asked, no file occupies)."""
        for n in range(MAX_DISAMBIGUATION + 1):
            candidate = PathLayout.disambiguated(base_relative, n)
            owner = self.store.path_owner(self.layout.to_stored(candidate))
            if owner is not None and owner.rowid != allowed_rowid:
                continue
            if vacant_on_disk and owner is None and self.layout.absolute(candidate).exists():
                continue
            if n:
                logger.warning(f"{key}: {base_relative} is taken, using {candidate}")
            return candidate
        raise PathCollisionError(f"No free path for {base_relative} after {MAX_DISAMBIGUATION} attempts", key=key)

    def _publish(self, descriptor: AttachmentDescriptor, current: Optional[ArtifactVersion],
                 classification: Classification, canonical: str, tmp_path: Path, new_hash: str,
                 now: str) -> ReconcileResult:
        key = descriptor.key
        journal = _RenameJournal()
        has_current_file = current is not None and current.path is not None
        action = ReconcileAction.SUPERSEDED if has_current_file else ReconcileAction.DOWNLOADED
        try:
            with self.db.transaction():
                target = self._free_relative(canonical, current.rowid if has_current_file else None, key,
                                             vacant_on_disk=False)
                target_stored = self.layout.to_stored(target)
                target_abs = self.layout.absolute(target)

                # 1. move the prior version out of the way, keeping it under its own content hash
                if has_current_file:
                    current_abs = self.layout.resolve(current.path)
                    if current_abs.exists():
                        current_hash = current.content_hash or compute_sha256(current_abs)
                        superseded = self.layout.superseded_relative(key, current.extension, current_hash)
                        aside = self._free_relative(superseded, None, key, vacant_on_disk=True)
                        self.store.move_path(current.rowid, self.layout.to_stored(aside), current_hash)
                        journal.rename(current_abs, self.layout.absolute(aside))
                    else:
                        logger.warning(f"{key}: prior file {current_abs} is gone; clearing its path")
                        self.store.clear_path(current.rowid)

                # 2. an untracked file squatting on the target is adopted or moved aside
                if target_abs.exists() and self.store.path_owner(target_stored) is None:
                    squatter_hash = compute_sha256(target_abs)
                    if squatter_hash == new_hash and not has_current_file:
                        action = ReconcileAction.ADOPTED
                    else:
                        aside = self._free_relative(PathLayout.content_addressed(target, squatter_hash), None,
                                                    key, vacant_on_disk=True)
                        logger.warning(f"{key}: moving untracked {target_abs} to {aside}")
                        journal.rename(target_abs, self.layout.absolute(aside))

                # 3. record and publish the new version
                if current is not None and current.path is None:
                    self.store.refill(current.rowid, descriptor, new_hash, target_stored, now)
                else:
                    self.store.insert_version(descriptor, new_hash, target_stored, now)
                if action is not ReconcileAction.ADOPTED:
                    journal.publish(tmp_path, target_abs)
        except ConflictError as e:
            journal.undo()
            raise PathCollisionError(f"Path already recorded for another artifact: {e}", key=key) from e
        except BaseException:
            journal.undo()
            raise

        return ReconcileResult(key, classification, action, target_stored, new_hash)

#
# End of download.py
#######################################################################################################################
