#!/usr/bin/env python3
import re
import sys
import argparse
from datetime import datetime, timezone
from dataclasses import dataclass, field

from botocore.exceptions import BotoCoreError, ClientError
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from settings import ConfigError, load_settings
from uploader import log_aws_transaction, make_s3_client

# AWS S3 delete_objects can take up to 1000 keys per request
DELETE_BATCH_SIZE = 1000

UNIT_ALIASES = {
    "sec": "seconds", "second": "seconds",
    "min": "minutes", "minute": "minutes",
    "hour": "hours",
    "day": "days",
    "week": "weeks",
    "fortnight": "fortnights",
    "month": "months",
    "year": "years",
}
RELATIVE_RE = re.compile(r"^([+-]?\d+)\s*([a-z]+?)s?(\s+ago)?$")


class RetentionError(ValueError):
    """DELETE_OLDER_THAN could not be understood."""


@dataclass(frozen=True)
class RetentionCandidate:
    key: str
    created: datetime


@dataclass
class SweepResult:
    cutoff: datetime
    scanned: int = 0
    deleted: list = field(default_factory=list)
    kept: int = 0
    errors: int = 0


def parse_cutoff(expression, now=None):
    """
    Resolves a date(1)-style expression into an aware UTC instant.
    '30 days ago' and '-30 days' are in the past; '30 days' is in the future.
    Anything that isn't relative is handed to dateutil as an absolute timestamp.
    """
    now = now or datetime.now(timezone.utc)
    text = (expression or "").strip().lower()
    if not text:
        raise RetentionError("Empty retention expression")

    if text in ("now", "today"):
        return now
    if text == "yesterday":
        return now - relativedelta(days=1)
    if text == "tomorrow":
        return now + relativedelta(days=1)

    match = RELATIVE_RE.match(text)
    if match:
        amount, unit, ago = match.groups()
        unit = UNIT_ALIASES.get(unit)
        if unit is None:
            raise RetentionError(f"Unknown time unit in {expression!r}")
        amount = int(amount)
        if unit == "fortnights":
            unit, amount = "weeks", amount * 2
        if ago:
            amount = -amount
        return now + relativedelta(**{unit: amount})

    try:
        parsed = date_parser.parse(expression)
    except (ValueError, OverflowError) as e:
        raise RetentionError(f"Cannot parse retention expression {expression!r}: {e}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def sweep_prefix(prefix):
    """Listing prefix for the sweep. Empty means the whole bucket."""
    prefix = (prefix or "").strip("/")
    return f"{prefix}/" if prefix else ""


def list_retention_candidates(client, bucket, prefix):
    """Every object under prefix (recursive), with its LastModified as an aware datetime."""
    paginator = client.get_paginator('list_objects_v2')
    for page in paginator.paginate(Bucket=bucket, Prefix=sweep_prefix(prefix)):
        for obj in page.get('Contents', []):
            created = obj['LastModified']
            if isinstance(created, str):
                created = date_parser.parse(created)
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            yield RetentionCandidate(obj['Key'], created)


def _delete_batch(client, bucket, batch, result, transaction_log):
    try:
        response = client.delete_objects(Bucket=bucket, Delete={'Objects': batch, 'Quiet': True})
    except (BotoCoreError, ClientError) as e:
        print(f"  [ERROR] Batch deletion failed: {e}", file=sys.stderr)
        result.errors += len(batch)
        return

    failed = {err.get('Key'): err.get('Message', 'unknown error') for err in response.get('Errors', [])}
    for item in batch:
        key = item['Key']
        if key in failed:
            print(f"  [ERROR] Could not delete {key}: {failed[key]}", file=sys.stderr)
            result.errors += 1
            continue
        result.deleted.append(key)
        log_aws_transaction(transaction_log, "RETENTION_DELETE", key, 0, "N/A",
                            response.get('ResponseMetadata', {}), bucket)


def sweep(client, bucket, prefix, cutoff, delete=True, transaction_log=""):
    """Deletes every object under prefix created strictly before cutoff. Never raises for S3 errors."""
    result = SweepResult(cutoff=cutoff)
    stale = []

    try:
        for candidate in list_retention_candidates(client, bucket, prefix):
            result.scanned += 1
            if candidate.created < cutoff:
                stale.append(candidate)
            else:
                result.kept += 1
    except (BotoCoreError, ClientError) as e:
        print(f"  [ERROR] Could not list s3://{bucket}/{sweep_prefix(prefix)}: {e}", file=sys.stderr)
        result.errors += 1
        return result

    if not stale:
        print(f"  [OK] Nothing older than {cutoff.isoformat()} under s3://{bucket}/{sweep_prefix(prefix)}")
        return result

    keys_to_delete = []
    for candidate in stale:
        if delete:
            keys_to_delete.append({'Key': candidate.key})
            print(f"  [DELETING] {candidate.key} (created {candidate.created.isoformat()})")
        else:
            print(f"  [DRY RUN] Would delete {candidate.key} (created {candidate.created.isoformat()})")

    for i in range(0, len(keys_to_delete), DELETE_BATCH_SIZE):
        _delete_batch(client, bucket, keys_to_delete[i:i + DELETE_BATCH_SIZE], result, transaction_log)

    return result


def main(argv=None):
    """Standalone retention pass using the same environment as the backup run."""
    parser = argparse.ArgumentParser(description="Delete backups older than a cutoff")
    parser.add_argument("--delete", action="store_true", help="Actually delete (otherwise dry-run)")
    parser.add_argument("--older-than", type=str, help="Override DELETE_OLDER_THAN, e.g. '30 days ago'")
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"[FATAL] {e}", file=sys.stderr)
        return 1

    expression = args.older_than or settings.delete_older_than
    if not expression or not settings.bucket:
        print("[FATAL] Set S3_BUCKET and DELETE_OLDER_THAN (or pass --older-than).", file=sys.stderr)
        return 1

    try:
        cutoff = parse_cutoff(expression)
    except RetentionError as e:
        print(f"[FATAL] {e}", file=sys.stderr)
        return 1

    print(f"\n--- Retention Sweep [{'LIVE' if args.delete else 'DRY RUN'}] ---")
    print(f"Scanning s3://{settings.bucket}/{sweep_prefix(settings.prefix)} for objects older than {cutoff.isoformat()}")
    result = sweep(make_s3_client(settings), settings.bucket, settings.prefix, cutoff,
                   delete=args.delete, transaction_log=settings.transaction_log)
    print(f"[COMPLETE] scanned={result.scanned} deleted={len(result.deleted)} kept={result.kept} errors={result.errors}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
