#!/usr/bin/env python3
import os
import shlex
import shutil
import sqlite3
import logging
import tempfile
import subprocess
from urllib.parse import quote
from contextlib import contextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ENCRYPTION_SUFFIX = ".gpg"
DEFAULT_COMPRESSION_SUFFIX = ".gz"
COMPRESSION_SUFFIXES = {
    "gzip": ".gz",
    "pigz": ".gz",
    "bzip2": ".bz2",
    "pbzip2": ".bz2",
    "xz": ".xz",
    "pixz": ".xz",
    "zstd": ".zst",
    "pzstd": ".zst",
}


class TransformError(Exception):
    """A single item could not be dumped, copied, compressed or encrypted."""


@dataclass(frozen=True)
class Payload:
    """A transformed local file plus the suffixes its object key must carry."""
    path: str
    suffix: str = ""


@contextmanager
def item_workspace(parent=None):
    """Per-item scratch directory, removed on every exit path."""
    workdir = tempfile.mkdtemp(prefix="item_", dir=parent)
    try:
        yield workdir
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


def _remove(path):
    if path and os.path.exists(path):
        os.remove(path)


def _stderr_text(err):
    if isinstance(err, subprocess.CalledProcessError) and err.stderr:
        return err.stderr.decode(errors="replace").strip()
    return str(err)


# --- DUMP / COPY ---

def snapshot_database(src_path, dest_path):
    """Point-in-time copy through the SQLite online backup API; writers are not blocked."""
    uri = f"file:{quote(os.path.abspath(src_path))}?mode=ro"
    src = dst = None
    try:
        src = sqlite3.connect(uri, uri=True)
        dst = sqlite3.connect(dest_path)
        src.backup(dst)
    except sqlite3.Error as e:
        if dst is not None:
            dst.close()
            dst = None
        _remove(dest_path)
        raise TransformError(f"SQLite backup failed for {src_path}: {e}") from e
    finally:
        if dst is not None:
            dst.close()
        if src is not None:
            src.close()
    return dest_path


def copy_asset(src_path, dest_path):
    try:
        shutil.copyfile(src_path, dest_path)
    except OSError as e:
        _remove(dest_path)
        raise TransformError(f"Copy failed for {src_path}: {e}") from e
    return dest_path


# --- COMPRESSION ---

def compression_program(command):
    parts = shlex.split(command or "")
    return parts[0] if parts else None


def compression_suffix(command):
    program = compression_program(command)
    if not program:
        return ""
    return COMPRESSION_SUFFIXES.get(os.path.basename(program), DEFAULT_COMPRESSION_SUFFIX)


def compress_file(path, command):
    """Pipes path through the compression command. The input is always removed."""
    output = path + compression_suffix(command)
    try:
        with open(path, "rb") as f_in, open(output, "wb") as f_out:
            subprocess.run(shlex.split(command), stdin=f_in, stdout=f_out,
                           stderr=subprocess.PIPE, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        _remove(output)
        raise TransformError(f"Compression ({command}) failed: {_stderr_text(e)}") from e
    finally:
        _remove(path)
    return output


# --- ENCRYPTION ---

def encrypt_file(path, passphrase, gpg_binary="gpg"):
    """Symmetric AES256 via gpg. The passphrase goes over a pipe, never argv."""
    output = path + ENCRYPTION_SUFFIX
    gpg_cmd = [gpg_binary, "--batch", "--yes", "--quiet",
               "--pinentry-mode", "loopback", "--passphrase-fd", "0",
               "--symmetric", "--cipher-algo", "AES256",
               "--output", output, path]
    try:
        subprocess.run(gpg_cmd, input=passphrase.encode(), check=True,
                       stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
    except (OSError, subprocess.CalledProcessError) as e:
        _remove(output)
        raise TransformError(f"Encryption failed for {os.path.basename(path)}: {_stderr_text(e)}") from e
    finally:
        _remove(path)
    return output


# --- PIPELINE ---

def materialize(item, workdir):
    """Dump (database) or copy (asset) the candidate into workdir."""
    src = item.candidate.path
    dest = os.path.join(workdir, os.path.basename(src))
    if item.is_database:
        return snapshot_database(src, dest)
    if item.is_asset:
        return copy_asset(src, dest)
    raise TransformError(f"{item.classification.value} items are not transformed")


def prepare_payload(item, workdir, compression_cmd="", passphrase="", gpg_binary="gpg"):
    """Per-file mode: dump/copy, then optional compression, then optional encryption."""
    path = materialize(item, workdir)
    suffix = ""

    if compression_cmd:
        logger.debug("Compressing %s with %s", path, compression_cmd)
        path = compress_file(path, compression_cmd)
        suffix += compression_suffix(compression_cmd)

    if passphrase:
        path = encrypt_file(path, passphrase, gpg_binary)
        suffix += ENCRYPTION_SUFFIX

    return Payload(path, suffix)


def predicted_suffix(compression_cmd="", passphrase=""):
    """The suffix prepare_payload would produce, without touching anything."""
    suffix = compression_suffix(compression_cmd) if compression_cmd else ""
    if passphrase:
        suffix += ENCRYPTION_SUFFIX
    return suffix
