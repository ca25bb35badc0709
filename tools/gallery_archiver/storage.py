"""Disk layout – canonical paths, moves and image verification."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from .config import StorageConfig
from .errors import FilesystemError
from .models import Subfolder

logger = logging.getLogger("archiver.storage")

# Extensions Pillow can check for truncation after a transfer
IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff"}
)


def owner_dirname(owner: str) -> str:
    """Directory name for an account; a trailing dot is not a valid folder name on Windows."""
    return owner[:-1] + "._" if owner.endswith(".") else owner


def is_valid_filename(name: str | None) -> bool:
    return bool(name) and not name.endswith(".")  # type: ignore[union-attr]


class DiskStorageService:
    """Files live at ``root/<owner>/<subfolder>/<name>``.

    Thumbnails go to ``root/<owner>/thumbnail/``.  Files downloaded by older
    versions sit directly in ``root`` until the reconciler moves them.
    """

    def __init__(self, cfg: StorageConfig | None = None) -> None:
        self.cfg = cfg or StorageConfig.from_env()
        self.root = Path(self.cfg.root)

    # ── paths ────────────────────────────────────────────────────

    def directory(self, owner: str, subfolder: Subfolder) -> Path:
        return self.root / owner_dirname(owner) / subfolder.value

    def path_for(self, owner: str, subfolder: Subfolder, name: str) -> Path:
        return self.directory(owner, subfolder) / name

    def legacy_path(self, name: str) -> Path:
        return self.root / name

    def candidates(self, owner: str, name: str) -> list[Path]:
        """Every place a file for ``owner`` may already be, legacy root last."""
        return [self.path_for(owner, sub, name) for sub in Subfolder] + [self.legacy_path(name)]

    def find_existing(self, owner: str, name: str) -> Path | None:
        for path in self.candidates(owner, name):
            if path.is_file():
                return path
        return None

    # ── mutation ─────────────────────────────────────────────────

    def ensure_dir(self, path: Path) -> Path:
        try:
            path.mkdir(mode=self.cfg.dir_mode, parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(path, exc) from exc
        return path

    def move(self, src: Path, dest: Path) -> None:
        self.ensure_dir(dest.parent)
        try:
            shutil.move(str(src), str(dest))
        except OSError as exc:
            raise FilesystemError(src, exc) from exc

    def remove(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise FilesystemError(path, exc) from exc
        logger.debug("Removed %s", path)
        return True

    # ── verification ─────────────────────────────────────────────

    @staticmethod
    def verify_image(path: Path) -> bool:
        """False if ``path`` has an image extension but is not a readable image."""
        if path.suffix.lower() not in IMAGE_EXTENSIONS:
            return True
        try:
            with Image.open(path) as img:
                img.verify()
            return True
        except (UnidentifiedImageError, OSError, SyntaxError) as exc:
            logger.warning("Corrupt image %s: %s", path.name, exc)
            return False
