#!/usr/bin/env python3
import os
import shutil
import tarfile
import zipfile
import tempfile
import logging

logger = logging.getLogger(__name__)


class ScratchDir:
    """Run-owned temporary directory. Nothing touches the disk until root is first used."""

    prefix = "scratch_"

    def __init__(self, parent=None):
        self.parent = parent
        self._root = None

    @property
    def created(self):
        return self._root is not None

    @property
    def root(self):
        if self._root is None:
            if self.parent:
                os.makedirs(self.parent, exist_ok=True)
            self._root = tempfile.mkdtemp(prefix=self.prefix, dir=self.parent)
        return self._root

    def cleanup(self):
        if self._root is not None:
            shutil.rmtree(self._root, ignore_errors=True)
            self._root = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
        return False


class StagingArea(ScratchDir):
    """Tree mirroring the archive layout, one entry per relative key."""

    prefix = "staging_"

    def __init__(self, parent=None):
        super().__init__(parent)
        self.staged = []

    def stage(self, src_path, rel_key):
        """Moves a transformed file into the tree at rel_key."""
        target = os.path.join(self.root, *rel_key.split("/"))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        shutil.move(src_path, target)
        self.staged.append(rel_key)
        return target


def archive_extension(archive_format, override=""):
    if override:
        return override.lstrip(".")
    return "tar.gz" if archive_format in ("tar.gz", "tgz") else archive_format


def _walk_sorted(root):
    for current, dirs, files in os.walk(root):
        dirs.sort()
        for name in sorted(files):
            full_path = os.path.join(current, name)
            yield full_path, os.path.relpath(full_path, root).replace(os.sep, "/")


def build_archive(source_dir, archive_path, archive_format="tar.gz"):
    """Packs every file under source_dir with member names relative to it."""
    if archive_format in ("tar.gz", "tgz"):
        with tarfile.open(archive_path, "w:gz") as tar:
            for full_path, arcname in _walk_sorted(source_dir):
                tar.add(full_path, arcname=arcname)
    elif archive_format == "zip":
        with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for full_path, arcname in _walk_sorted(source_dir):
                zf.write(full_path, arcname=arcname)
    else:
        raise ValueError(f"Unsupported archive format: {archive_format}")

    logger.debug("Built %s (%d bytes)", archive_path, os.path.getsize(archive_path))
    return archive_path
