#!/usr/bin/env python3
import os
import sys
import json
import socket
import logging
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from boto3.exceptions import Boto3Error
from tqdm import tqdm

logger = logging.getLogger(__name__)

SYSTEM_NAME = "sqlite-backup-s3"
VERSION = "1.0"

# Length of "[NET: S3]" is 9. We add 1 for spacing = 10.
STATUS_WIDTH = 10

UPLOAD_ERRORS = (BotoCoreError, ClientError, Boto3Error, OSError)


@dataclass
class UploadResult:
    """Outcome of one object upload."""
    success: bool
    key: str
    size_bytes: int = 0
    etag: Optional[str] = None
    error: Optional[str] = None


def format_bytes(size):
    """Converts raw bytes to human readable format."""
    power = 2**10
    n = size
    power_labels = {0: 'B', 1: 'KB', 2: 'MB', 3: 'GB', 4: 'TB'}
    loop = 0
    while n > power and loop < 4:
        n /= power
        loop += 1
    return f"{n:.2f} {power_labels[loop]}"


def make_s3_client(settings):
    """boto3 S3 client for AWS or any S3-compatible endpoint (MinIO etc.)."""
    s3_options = {}
    if settings.force_path_style:
        s3_options['addressing_style'] = 'path'
    boto_config = BotoConfig(
        signature_version='s3v4' if settings.s3v4 else None,
        s3=s3_options or None,
    )
    return boto3.client(
        's3',
        endpoint_url=settings.endpoint or None,
        region_name=settings.region or None,
        aws_access_key_id=settings.access_key or None,
        aws_secret_access_key=settings.secret_key or None,
        config=boto_config,
    )


def log_aws_transaction(log_file, action, key, size_bytes, etag, response_metadata, bucket=""):
    """
    Appends an NDJSON record to the transaction ledger.
    A ledger write failure never interrupts the backup.
    """
    if not log_file:
        return

    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.upper(),
        "bucket": bucket,
        "key": key,
        "system": SYSTEM_NAME,
        "version": VERSION,
        "size_bytes": size_bytes,
        "local_host": socket.gethostname(),
        "etag": etag,
        "request_id": response_metadata.get('RequestId', 'N/A'),
        "aws_host_id": response_metadata.get('HostId', 'N/A'),
    }

    try:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)
        with open(log_file, "a") as f:
            f.write(json.dumps(entry) + "\n")
            f.flush()
    except OSError as e:
        print(f"    [!] LOGGING ERROR: Could not write to {log_file} ({e})", file=sys.stderr)


class S3Uploader:
    """Streams local files to one bucket, making sure the bucket exists first."""

    def __init__(self, client, bucket, region="", upload_limit_mb=0, transaction_log=""):
        self.client = client
        self.bucket = bucket
        self.region = region
        self.transaction_log = transaction_log
        self._bucket_checked = False

        if upload_limit_mb > 0:
            self.transfer_config = TransferConfig(max_bandwidth=upload_limit_mb * 1024 * 1024, use_threads=True)
        else:
            self.transfer_config = TransferConfig(use_threads=True)

    def ensure_bucket(self):
        """head_bucket, then a best-effort create_bucket. Never raises."""
        if self._bucket_checked:
            return
        self._bucket_checked = True
        try:
            self.client.head_bucket(Bucket=self.bucket)
            return
        except UPLOAD_ERRORS as e:
            logger.debug("head_bucket failed for %s: %s", self.bucket, e)

        print(f"  [INIT] Bucket '{self.bucket}' not reachable. Attempting to create it...")
        kwargs = {'Bucket': self.bucket}
        if self.region and self.region != 'us-east-1':
            kwargs['CreateBucketConfiguration'] = {'LocationConstraint': self.region}
        try:
            self.client.create_bucket(**kwargs)
            print(f"  [OK] Created bucket '{self.bucket}'")
        except UPLOAD_ERRORS as e:
            # A bucket created out-of-band with restricted permissions is the common case
            print(f"  [WARN] Could not create bucket '{self.bucket}': {e}", file=sys.stderr)

    def _verify(self, key, size_bytes):
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
            etag = response.get('ETag', '').replace('"', '')
            log_aws_transaction(self.transaction_log, "UPLOAD", key, size_bytes, etag,
                                response.get('ResponseMetadata', {}), self.bucket)
            return etag
        except UPLOAD_ERRORS as e:
            log_aws_transaction(self.transaction_log, "VERIFY_FAILURE", key, size_bytes, "N/A",
                                {"Error": str(e)}, self.bucket)
            return "VERIFY_FAILED"

    def upload(self, path, key):
        """Streams path to key. The file handle is released once the transfer ends."""
        self.ensure_bucket()

        try:
            file_size = os.path.getsize(path)
            desc = "  " + "[NET: S3]".ljust(STATUS_WIDTH)
            with open(path, "rb") as stream, tqdm(
                total=file_size,
                unit='B',
                unit_scale=True,
                leave=False,
                ncols=100,
                disable=None,
                bar_format="{desc} {percentage:5.1f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]"
            ) as pbar:
                pbar.set_description(desc)
                self.client.upload_fileobj(
                    stream,
                    self.bucket,
                    key,
                    Config=self.transfer_config,
                    Callback=lambda bytes_transferred: pbar.update(bytes_transferred)
                )
        except UPLOAD_ERRORS as e:
            return UploadResult(False, key, error=str(e))

        etag = self._verify(key, file_size)
        return UploadResult(True, key, size_bytes=file_size, etag=etag)
