#!/usr/bin/env python3
import os
import sys
import shutil
import logging
import tarfile
import zipfile
import argparse
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Optional

from settings import ConfigError, load_settings, validate_settings
from sources import Classification, ClassificationError, classify, discover_candidates
from transform import (ENCRYPTION_SUFFIX, TransformError, compression_program, encrypt_file,
                       item_workspace, materialize, predicted_suffix, prepare_payload)
from staging import ScratchDir, StagingArea, archive_extension, build_archive
from uploader import S3Uploader, format_bytes, make_s3_client
from prune import RetentionError, parse_cutoff, sweep, sweep_prefix

logger = logging.getLogger(__name__)

RUN_TS_FORMAT = "%Y-%m-%dT%H-%M-%SZ"
PAD_WIDTH = 14

SKIP_BUCKETS = {
    Classification.MISSING: "missing",
    Classification.EXT_FILTERED: "skipped_ext",
    Classification.NOT_DATABASE: "skipped_not_database",
}
SKIP_LABELS = {
    Classification.MISSING: "[SKIP] Not a file",
    Classification.EXT_FILTERED: "[SKIP] Extension filtered",
    Classification.NOT_DATABASE: "[SKIP] Not a SQLite database",
}


@dataclass(frozen=True)
class RunContext:
    """Everything one run needs, fixed at start-up."""
    started_at: datetime
    run_ts: str
    bucket: str
    prefix: str
    bundle_archive: bool
    archive_format: str
    archive_ext: str
    compression_cmd: str
    passphrase: str
    dry_run: bool
    root_dir: str = ""
    extensions: tuple = ()
    include_assets: bool = False
    gpg_binary: str = "gpg"

    @property
    def mode(self):
        return "archive" if self.bundle_archive else "per-file"

    @property
    def base_prefix(self):
        prefix = self.prefix.strip("/")
        return f"{prefix}/" if prefix else ""

    @property
    def run_prefix(self):
        return f"{self.base_prefix}{self.run_ts}/"

    def object_key(self, rel_key, suffix=""):
        return f"{self.run_prefix}{rel_key}{suffix}"

    @property
    def archive_key(self):
        key = f"{self.base_prefix}{self.run_ts}.{archive_extension(self.archive_format, self.archive_ext)}"
        return key + ENCRYPTION_SUFFIX if self.passphrase else key

    @property
    def target(self):
        key = self.archive_key if self.bundle_archive else self.run_prefix
        return f"s3://{self.bucket or '<bucket>'}/{key}"


@dataclass
class RunSummary:
    """Per-outcome key lists for one run. Exit status depends on failed alone."""
    backed_up: list = field(default_factory=list)
    included_assets: list = field(default_factory=list)
    skipped_ext: list = field(default_factory=list)
    skipped_not_database: list = field(default_factory=list)
    missing: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    archive_key: Optional[str] = None
    deleted: list = field(default_factory=list)

    def record(self, bucket, entry):
        getattr(self, bucket).append(entry)

    def counts(self):
        return {
            "backed_up": len(self.backed_up),
            "included_assets": len(self.included_assets),
            "skipped_ext": len(self.skipped_ext),
            "skipped_not_database": len(self.skipped_not_database),
            "missing": len(self.missing),
            "failed": len(self.failed),
        }

    @property
    def exit_code(self):
        return 0 if not self.failed else 1


def run_timestamp(now=None):
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(microsecond=0)


def build_run_context(settings, now=None):
    started_at = run_timestamp(now)
    return RunContext(
        started_at=started_at,
        run_ts=started_at.strftime(RUN_TS_FORMAT),
        bucket=settings.bucket,
        prefix=settings.prefix,
        bundle_archive=settings.bundle_archive,
        archive_format=settings.archive_format,
        archive_ext=settings.archive_ext,
        # Archive mode relies on the archive's own compression
        compression_cmd="" if settings.bundle_archive else settings.compression_cmd,
        passphrase=settings.encryption_password,
        dry_run=settings.dry_run,
        root_dir=settings.root_dir,
        extensions=settings.extensions,
        include_assets=settings.include_assets,
        gpg_binary=settings.gpg_binary,
    )


def check_tools(settings):
    """External binaries a real run will call must exist before anything starts."""
    if settings.encryption_password and not shutil.which(settings.gpg_binary):
        raise ConfigError(f"{settings.gpg_binary} is not installed but ENCRYPTION_PASSWORD is set.")
    if not settings.bundle_archive and settings.compression_cmd:
        program = compression_program(settings.compression_cmd)
        if not shutil.which(program):
            raise ConfigError(f"Compression program '{program}' from COMPRESSION_CMD is not installed.")


# --- REPORTING ---

def print_plan(ctx, candidates):
    print(f"\n--- SQLite Backup [{'DRY RUN' if ctx.dry_run else 'LIVE'}] {ctx.run_ts} ---")
    if ctx.bundle_archive:
        print(f"{'  > Mode':<{PAD_WIDTH}}: archive ({ctx.archive_format})")
    else:
        compression = ctx.compression_cmd or "none"
        print(f"{'  > Mode':<{PAD_WIDTH}}: per-file (compression: {compression})")
    print(f"{'  > Encryption':<{PAD_WIDTH}}: {'gpg AES256' if ctx.passphrase else 'off'}")
    print(f"{'  > Target':<{PAD_WIDTH}}: {ctx.target}")
    print(f"{'  > Sources':<{PAD_WIDTH}}: {len(candidates)}")
    total = len(candidates)
    for idx, candidate in enumerate(candidates, 1):
        print(f"        [{idx:02d}/{total}] {candidate.path}")


def print_summary(summary, ctx):
    counts = summary.counts()
    print("\n" + "=" * 70)
    print(f"{'SUMMARY':<40} {'COUNT':>6}")
    print("-" * 70)
    labels = (
        ("backed_up", "Backed up"),
        ("included_assets", "Included assets"),
        ("skipped_ext", "Skipped (extension)"),
        ("skipped_not_database", "Skipped (not a database)"),
        ("missing", "Missing"),
        ("failed", "Failed"),
    )
    for name, label in labels:
        print(f"{label:<40} {counts[name]:>6}")
    print("-" * 70)
    if summary.archive_key:
        print(f"Archive: s3://{ctx.bucket or '<bucket>'}/{summary.archive_key}")
    for name, label in labels:
        entries = getattr(summary, name)
        if entries:
            print(f"\n{label}:")
            for entry in entries:
                print(f"  - {entry}")
    print("=" * 70)

    if summary.failed:
        print(f"Completed with {len(summary.failed)} failure(s).", file=sys.stderr)
    elif ctx.dry_run:
        print("[DRY RUN] No changes were made.")
    else:
        print("[COMPLETE] SQLite backups finished.")


# --- PROCESSING ---

def process_candidate(item, ctx, summary, uploader=None, staging=None, scratch=None):
    """Runs one classified item through its branch and records exactly one outcome."""
    candidate = item.candidate
    if item.classification in SKIP_BUCKETS:
        print(f"  {SKIP_LABELS[item.classification]}: {candidate.path}")
        summary.record(SKIP_BUCKETS[item.classification], candidate.path)
        return

    bucket = "backed_up" if item.is_database else "included_assets"
    kind = "database" if item.is_database else "asset"

    if ctx.bundle_archive:
        if ctx.dry_run:
            print(f"  [DRY RUN] Would stage {kind} {candidate.path} as {candidate.rel_key}")
        else:
            with item_workspace(scratch.root) as workdir:
                staging.stage(materialize(item, workdir), candidate.rel_key)
            print(f"  [STAGED] {kind} {candidate.path} -> {candidate.rel_key}")
        summary.record(bucket, candidate.rel_key)
        return

    if ctx.dry_run:
        key = ctx.object_key(candidate.rel_key, predicted_suffix(ctx.compression_cmd, ctx.passphrase))
        print(f"  [DRY RUN] Would upload {kind} {candidate.path} -> s3://{ctx.bucket or '<bucket>'}/{key}")
        summary.record(bucket, key)
        return

    with item_workspace(scratch.root) as workdir:
        payload = prepare_payload(item, workdir, ctx.compression_cmd, ctx.passphrase, ctx.gpg_binary)
        key = ctx.object_key(candidate.rel_key, payload.suffix)
        print(f"  [UPLOADING] {candidate.path} -> s3://{ctx.bucket}/{key}")
        result = uploader.upload(payload.path, key)

    if not result.success:
        print(f"  [ERROR] Upload failed for {candidate.path}: {result.error}", file=sys.stderr)
        summary.record("failed", candidate.path)
        return

    print(f"  [OK] {format_bytes(result.size_bytes)} | ETag: {result.etag}")
    summary.record(bucket, key)


def finalize_archive(ctx, summary, uploader=None, staging=None, scratch=None):
    """Bundles the staging tree, encrypts it once if needed and uploads it as one object."""
    key = ctx.archive_key
    summary.archive_key = key
    item_count = len(summary.backed_up) + len(summary.included_assets)

    if ctx.dry_run:
        print(f"  [DRY RUN] Would bundle {item_count} item(s) and upload: s3://{ctx.bucket or '<bucket>'}/{key}")
        return

    with item_workspace(scratch.root) as workdir:
        archive_name = f"{ctx.run_ts}.{archive_extension(ctx.archive_format, ctx.archive_ext)}"
        archive_path = os.path.join(workdir, archive_name)
        try:
            print(f"\n{'  > Archive':<{PAD_WIDTH}}: {archive_name} ({item_count} item(s))")
            build_archive(staging.root, archive_path, ctx.archive_format)
            if ctx.passphrase:
                archive_path = encrypt_file(archive_path, ctx.passphrase, ctx.gpg_binary)
        except (TransformError, OSError, tarfile.TarError, zipfile.BadZipFile, ValueError) as e:
            print(f"  [ERROR] Could not build archive: {e}", file=sys.stderr)
            summary.record("failed", key)
            return

        print(f"  [UPLOADING] s3://{ctx.bucket}/{key}")
        result = uploader.upload(archive_path, key)

    if not result.success:
        print(f"  [ERROR] Archive upload failed: {result.error}", file=sys.stderr)
        summary.record("failed", key)
        return
    print(f"  [OK] {format_bytes(result.size_bytes)} | ETag: {result.etag}")


def run_retention(ctx, cutoff, summary, client=None, transaction_log=""):
    print(f"\n--- Retention: older than {cutoff.isoformat()} ---")
    if ctx.dry_run:
        print(f"  [DRY RUN] Would delete objects under s3://{ctx.bucket or '<bucket>'}/{sweep_prefix(ctx.prefix)} "
              f"created before {cutoff.isoformat()}")
        return
    result = sweep(client, ctx.bucket, ctx.prefix, cutoff, delete=True, transaction_log=transaction_log)
    summary.deleted.extend(result.deleted)


def run_backup(settings, client=None, now=None):
    """
    One complete run: validate, discover, classify and process every candidate,
    bundle (archive mode), sweep retention, print the summary.
    Raises ConfigError before any side effect when the configuration is unusable.
    """
    validate_settings(settings)
    cutoff = None
    ctx = build_run_context(settings, now)
    if settings.delete_older_than:
        try:
            cutoff = parse_cutoff(settings.delete_older_than, now=ctx.started_at)
        except RetentionError as e:
            raise ConfigError(str(e)) from e
    if not settings.dry_run:
        check_tools(settings)

    candidates = discover_candidates(settings.db_paths, settings.root_dir, settings.include_sub_dir)
    print_plan(ctx, candidates)

    summary = RunSummary()
    uploader = None
    if not ctx.dry_run:
        client = client or make_s3_client(settings)
        uploader = S3Uploader(client, settings.bucket, settings.region,
                              settings.upload_limit_mb, settings.transaction_log)

    scratch = ScratchDir(settings.scratch_dir or None)
    staging = StagingArea(settings.scratch_dir or None) if ctx.bundle_archive else None
    try:
        print()
        for candidate in candidates:
            try:
                item = classify(candidate, ctx.extensions, ctx.include_assets, ctx.root_dir)
                process_candidate(item, ctx, summary, uploader, staging, scratch)
            except (ClassificationError, TransformError) as e:
                print(f"  [ERROR] {e}", file=sys.stderr)
                print(f"!! Failure backing up: {candidate.path} (continuing...)", file=sys.stderr)
                summary.record("failed", candidate.path)
            except Exception as e:
                logger.exception("Unexpected failure for %s", candidate.path)
                print(f"!! Failure backing up: {candidate.path}: {e} (continuing...)", file=sys.stderr)
                summary.record("failed", candidate.path)

        if ctx.bundle_archive:
            finalize_archive(ctx, summary, uploader, staging, scratch)

        if cutoff is not None:
            run_retention(ctx, cutoff, summary, client, settings.transaction_log)
    finally:
        if staging is not None:
            staging.cleanup()
        scratch.cleanup()

    print_summary(summary, ctx)
    return summary


def configure_logging():
    level = os.environ.get("LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Back up SQLite databases to S3 (configured from the environment)")
    parser.add_argument("--dry-run", action="store_true", help="Classify and predict keys without touching anything")
    args = parser.parse_args(argv)

    configure_logging()
    print("-----", file=sys.stderr)
    try:
        settings = load_settings()
        if args.dry_run:
            settings = replace(settings, dry_run=True)
        summary = run_backup(settings)
    except ConfigError as e:
        print(f"[FATAL] {e}", file=sys.stderr)
        return 1
    print("-----", file=sys.stderr)
    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
