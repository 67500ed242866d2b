# Artifacts/paths.py
# Canonical on-disk layout for attachments and the conversions between stored and real paths.
import os
from pathlib import Path, PurePosixPath
from typing import Dict, Optional

from illust_archiver.app.core.config import (ArchiverConfig, ConfigurationError, DatabasePathFormat,
                                             DEFAULT_PATH_TEMPLATES)
from illust_archiver.app.core.Utils.Utils import sanitize_filename
from .models import ArtifactKey

CONTENT_HASH_PREFIX_LEN = 16
MAX_DISAMBIGUATION = 64


class PathLayout:
    """
    Maps artifact keys to relative canonical paths and back.

    Relative paths always use ``/`` separators and are relative to ``base_dir``. What gets written to
    the store depends on ``path_format``.
    """

    def __init__(self, base_dir: Path, path_format: DatabasePathFormat = DatabasePathFormat.INLINE,
                 templates: Optional[Dict[str, str]] = None):
        self.base_dir = Path(base_dir)
        self.path_format = DatabasePathFormat(path_format)
        self.templates = dict(DEFAULT_PATH_TEMPLATES)
        if templates:
            self.templates.update(templates)

    @classmethod
    def from_config(cls, config: ArchiverConfig) -> "PathLayout":
        return cls(config.base_dir, config.path_format, config.path_templates)

    # --- canonical names ---
    def canonical_relative(self, key: ArtifactKey, ext: str) -> str:
        template = self.templates[key.source.value]
        try:
            rendered = template.format(entity_id=key.entity_id, slot=key.slot, ext=ext)
        except (KeyError, IndexError) as e:
            raise ConfigurationError(f"Invalid path template for {key.source.value}: {template!r}") from e
        parts = [sanitize_filename(p) for p in PurePosixPath(rendered).parts if p not in ("", ".", "..", "/")]
        if not parts:
            raise ConfigurationError(f"Path template for {key.source.value} rendered an empty path")
        return str(PurePosixPath(*parts))

    @staticmethod
    def content_addressed(relative: str, content_hash: str) -> str:
        """``dir/name.ext`` -> ``dir/name.<hash prefix>.ext``: where superseded content is kept."""
        path = PurePosixPath(relative)
        return str(path.with_name(f"{path.stem}.{content_hash[:CONTENT_HASH_PREFIX_LEN]}{path.suffix}"))

    def superseded_relative(self, key: ArtifactKey, ext: str, content_hash: str) -> str:
        """Where a no-longer-current version is kept: its own canonical name, tagged with its hash."""
        return self.content_addressed(self.canonical_relative(key, ext), content_hash)

    @staticmethod
    def disambiguated(relative: str, n: int) -> str:
        if n == 0:
            return relative
        path = PurePosixPath(relative)
        return str(path.with_name(f"{path.stem}~{n}{path.suffix}"))

    # --- stored <-> filesystem ---
    def absolute(self, relative: str) -> Path:
        return self.base_dir / Path(*PurePosixPath(relative).parts)

    def to_stored(self, relative: str) -> str:
        if self.path_format is DatabasePathFormat.INLINE:
            return relative
        if self.path_format is DatabasePathFormat.AS_IS:
            return str(self.absolute(relative))
        return os.path.abspath(self.absolute(relative))

    def resolve(self, stored: str) -> Path:
        """Filesystem location of a stored path written under this layout's format."""
        path = Path(stored)
        if path.is_absolute():
            return path
        if self.path_format is DatabasePathFormat.INLINE:
            return self.base_dir / path
        return path
