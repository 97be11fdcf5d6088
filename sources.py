#!/usr/bin/env python3
import os
import sys
import sqlite3
import logging
from enum import Enum
from urllib.parse import quote
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SQLITE_HEADER = b"SQLite format 3\x00"
# Seconds the integrity probe waits on a writer lock
PROBE_TIMEOUT = 5.0


class ClassificationError(Exception):
    """The candidate could not be inspected at all (e.g. unreadable)."""


class Classification(Enum):
    MISSING = "missing"
    EXT_FILTERED = "ext-filtered"
    NOT_DATABASE = "not-database"
    VALID_DATABASE = "valid-database"
    ASSET = "asset"


@dataclass(frozen=True)
class SourceCandidate:
    path: str
    rel_key: str


@dataclass(frozen=True)
class ClassifiedItem:
    candidate: SourceCandidate
    classification: Classification

    @property
    def is_database(self):
        return self.classification is Classification.VALID_DATABASE

    @property
    def is_asset(self):
        return self.classification is Classification.ASSET


# --- DISCOVERY ---

def split_path_list(raw):
    """Splits a ';' and/or newline separated list, dropping blanks."""
    if not raw:
        return []
    entries = []
    for chunk in raw.replace("\r", "\n").replace("\n", ";").split(";"):
        chunk = chunk.strip()
        if chunk:
            entries.append(chunk)
    return entries


def scan_root(root_dir, recursive=False):
    """Lists files under root_dir in a stable order. A missing root yields nothing."""
    root = os.path.abspath(root_dir)
    if not os.path.isdir(root):
        print(f"  [WARN] Root directory not found: {root}", file=sys.stderr)
        return []

    found = []
    if recursive:
        for current, dirs, files in os.walk(root):
            dirs.sort()
            for name in sorted(files):
                found.append(os.path.join(current, name))
    else:
        for name in sorted(os.listdir(root)):
            full_path = os.path.join(root, name)
            if os.path.isfile(full_path):
                found.append(full_path)
    return found


def dedupe(paths):
    seen = set()
    ordered = []
    for path in paths:
        if path not in seen:
            seen.add(path)
            ordered.append(path)
    return ordered


def is_under_root(path, root_dir):
    if not root_dir:
        return False
    root = os.path.abspath(root_dir)
    return os.path.abspath(path).startswith(root.rstrip(os.sep) + os.sep)


def relative_key(path, root_dir=None):
    """Object key fragment: path relative to the root, or the basename when outside it."""
    if is_under_root(path, root_dir):
        rel = os.path.relpath(os.path.abspath(path), os.path.abspath(root_dir))
        return rel.replace(os.sep, "/")
    return os.path.basename(path)


def discover_candidates(db_paths="", root_dir="", recursive=False):
    """Explicit list first, then the directory scan, de-duplicated by exact path."""
    explicit = [os.path.abspath(p) for p in split_path_list(db_paths)]
    scanned = scan_root(root_dir, recursive) if root_dir else []
    return [SourceCandidate(path, relative_key(path, root_dir)) for path in dedupe(explicit + scanned)]


# --- CLASSIFICATION ---

def extension_allowed(path, extensions):
    """Case-insensitive exact suffix match. An empty allow-list lets everything through."""
    if not extensions:
        return True
    name = os.path.basename(path).lower()
    return any(name.endswith("." + ext.lower().lstrip(".")) for ext in extensions)


def has_sqlite_header(path):
    try:
        with open(path, "rb") as f:
            return f.read(len(SQLITE_HEADER)) == SQLITE_HEADER
    except OSError as e:
        raise ClassificationError(f"Cannot read {path}: {e}") from e


def probe_database(path):
    """Read-only integrity probe. True only if SQLite reports 'ok'."""
    uri = f"file:{quote(os.path.abspath(path))}?mode=ro"
    conn = None
    try:
        conn = sqlite3.connect(uri, uri=True, timeout=PROBE_TIMEOUT)
        row = conn.execute("PRAGMA quick_check").fetchone()
        return bool(row) and row[0] == "ok"
    except sqlite3.OperationalError as e:
        # Locked or unopenable: the answer is unknown, not "not a database"
        raise ClassificationError(f"Cannot probe {path}: {e}") from e
    except sqlite3.DatabaseError as e:
        logger.debug("Probe failed for %s: %s", path, e)
        return False
    finally:
        if conn is not None:
            conn.close()


def is_valid_database(path):
    # Header alone accepts corrupt files; the probe alone is slow on arbitrary files
    return has_sqlite_header(path) and probe_database(path)


def classify(candidate, extensions=(), include_assets=False, root_dir=""):
    path = candidate.path
    if not os.path.isfile(path):
        return ClassifiedItem(candidate, Classification.MISSING)

    promotable = include_assets and is_under_root(path, root_dir)

    if not extension_allowed(path, extensions):
        outcome = Classification.ASSET if promotable else Classification.EXT_FILTERED
        return ClassifiedItem(candidate, outcome)

    if not is_valid_database(path):
        outcome = Classification.ASSET if promotable else Classification.NOT_DATABASE
        return ClassifiedItem(candidate, outcome)

    return ClassifiedItem(candidate, Classification.VALID_DATABASE)
