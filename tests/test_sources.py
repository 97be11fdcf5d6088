import os

import pytest

import sources
from sources import (Classification, ClassificationError, SourceCandidate, classify,
                     dedupe, discover_candidates, extension_allowed, has_sqlite_header,
                     relative_key, scan_root, split_path_list)
from conftest import exclusive_lock, make_sqlite_db


def candidate(path, root=None):
    return SourceCandidate(str(path), relative_key(str(path), str(root) if root else None))


def test_split_path_list_handles_semicolons_and_newlines():
    raw = "/data/a.db;\n /data/b.db ;;\r\n\n/data/c db.sqlite\n"
    assert split_path_list(raw) == ["/data/a.db", "/data/b.db", "/data/c db.sqlite"]
    assert split_path_list("") == []


def test_dedupe_keeps_first_occurrence():
    assert dedupe(["A", "B", "A", "B", "C"]) == ["A", "B", "C"]


def test_discovery_order_explicit_before_scan(tmp_path):
    root = tmp_path / "data"
    root.mkdir()
    a = tmp_path / "A.db"
    b = root / "B.db"
    c = root / "C.db"
    for p in (a, b, c):
        p.write_text("x")

    found = discover_candidates(f"{a};{b};{a}", str(root))
    assert [c.path for c in found] == [str(a), str(b), str(c)]


def test_missing_root_contributes_nothing(tmp_path, capsys):
    assert scan_root(str(tmp_path / "absent")) == []
    assert "Root directory not found" in capsys.readouterr().err


def test_scan_is_top_level_unless_recursive(tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "top.db").write_text("x")
    (tmp_path / "sub" / "deep.db").write_text("x")

    assert scan_root(str(tmp_path)) == [str(tmp_path / "top.db")]
    assert scan_root(str(tmp_path), recursive=True) == [
        str(tmp_path / "top.db"),
        str(tmp_path / "sub" / "deep.db"),
    ]


def test_relative_key_under_root_and_outside(tmp_path):
    root = tmp_path / "data"
    assert relative_key(str(root / "sub" / "b.db"), str(root)) == "sub/b.db"
    assert relative_key("/elsewhere/x.db", str(root)) == "x.db"
    assert relative_key("/elsewhere/x.db", None) == "x.db"


@pytest.mark.parametrize("name,exts,allowed", [
    ("app.SQLITE", ("sqlite",), True),
    ("app.sqlite", ("SQLite",), True),
    ("app.db", ("sqlite", "db"), True),
    ("app.sqlite.bak", ("sqlite",), False),
    ("appdb", ("db",), False),
    ("anything.txt", (), True),
])
def test_extension_allow_list_is_case_insensitive_exact_suffix(name, exts, allowed):
    assert extension_allowed(f"/data/{name}", exts) is allowed


def test_valid_database(tmp_path):
    db = make_sqlite_db(tmp_path / "test1.sqlite")
    assert classify(candidate(db)).classification is Classification.VALID_DATABASE


def test_missing_file(tmp_path):
    assert classify(candidate(tmp_path / "gone.db")).classification is Classification.MISSING


def test_directory_counts_as_missing(tmp_path):
    assert classify(candidate(tmp_path)).classification is Classification.MISSING


def test_header_with_garbage_body_is_not_database(tmp_path):
    broken = tmp_path / "broken.db"
    broken.write_bytes(sources.SQLITE_HEADER + b"\xff" * 4096)
    assert has_sqlite_header(str(broken))
    assert classify(candidate(broken)).classification is Classification.NOT_DATABASE


def test_probe_success_without_header_is_not_database(tmp_path, monkeypatch):
    plain = tmp_path / "plain.db"
    plain.write_text("hello")
    monkeypatch.setattr(sources, "probe_database", lambda path: True)
    assert classify(candidate(plain)).classification is Classification.NOT_DATABASE


def test_header_without_probe_success_is_not_database(tmp_path, monkeypatch):
    db = make_sqlite_db(tmp_path / "real.db")
    monkeypatch.setattr(sources, "probe_database", lambda path: False)
    assert classify(candidate(db)).classification is Classification.NOT_DATABASE


def test_locked_database_cannot_be_classified(tmp_path, monkeypatch):
    db = make_sqlite_db(tmp_path / "busy.db")
    monkeypatch.setattr(sources, "PROBE_TIMEOUT", 0.1)
    with exclusive_lock(db):
        with pytest.raises(ClassificationError, match="locked"):
            classify(candidate(db))
    assert classify(candidate(db)).classification is Classification.VALID_DATABASE


def test_extension_filtered(tmp_path):
    db = make_sqlite_db(tmp_path / "real.bin")
    item = classify(candidate(db), extensions=("sqlite", "db"))
    assert item.classification is Classification.EXT_FILTERED


def test_assets_promoted_only_under_root(tmp_path):
    root = tmp_path / "data"
    root.mkdir()
    note = root / "note.txt"
    note.write_text("hello")
    outside = tmp_path / "outside.txt"
    outside.write_text("hello")

    inside_item = classify(candidate(note, root), include_assets=True, root_dir=str(root))
    outside_item = classify(candidate(outside, root), include_assets=True, root_dir=str(root))
    assert inside_item.classification is Classification.ASSET
    assert outside_item.classification is Classification.NOT_DATABASE


def test_ext_filtered_file_under_root_becomes_asset(tmp_path):
    root = tmp_path / "data"
    (root / "img").mkdir(parents=True)
    logo = root / "img" / "logo.png"
    logo.write_bytes(b"\x89PNG")
    item = classify(candidate(logo, root), extensions=("db",), include_assets=True, root_dir=str(root))
    assert item.classification is Classification.ASSET
    assert item.candidate.rel_key == "img/logo.png"


def test_assets_off_keeps_skip_outcome(tmp_path):
    note = tmp_path / "note.txt"
    note.write_text("hello")
    item = classify(candidate(note, tmp_path), include_assets=False, root_dir=str(tmp_path))
    assert item.classification is Classification.NOT_DATABASE


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root can read anything")
def test_unreadable_file_raises_classification_error(tmp_path):
    locked = tmp_path / "locked.db"
    locked.write_bytes(b"data")
    locked.chmod(0)
    try:
        with pytest.raises(ClassificationError):
            classify(candidate(locked))
    finally:
        locked.chmod(0o644)
