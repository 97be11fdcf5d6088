#!/usr/bin/env python3
import os
import configparser
from dataclasses import dataclass

# Docker images historically shipped "**None**" as the unset marker
UNSET_MARKER = "**None**"
TRUTHY = ("yes", "true", "1", "on")

DEFAULT_COMPRESSION_CMD = "gzip -c"
ARCHIVE_FORMATS = ("tar.gz", "tgz", "zip")


class ConfigError(Exception):
    """Fatal configuration problem detected before any side effect."""


@dataclass(frozen=True)
class Settings:
    db_paths: str = ""
    root_dir: str = ""
    include_sub_dir: bool = False
    include_assets: bool = False
    extensions: tuple = ()
    dry_run: bool = False

    access_key: str = ""
    secret_key: str = ""
    bucket: str = ""
    region: str = "us-west-1"
    prefix: str = "backup"
    endpoint: str = ""
    s3v4: bool = False
    force_path_style: bool = False

    bundle_archive: bool = True
    archive_format: str = "tar.gz"
    archive_ext: str = ""
    compression_cmd: str = DEFAULT_COMPRESSION_CMD
    encryption_password: str = ""
    delete_older_than: str = ""

    upload_limit_mb: int = 0
    transaction_log: str = ""
    scratch_dir: str = ""
    gpg_binary: str = "gpg"

    @property
    def has_sources(self):
        return bool(self.db_paths.replace(";", "").strip()) or bool(self.root_dir)


def parse_bool(value, default=False):
    """Turns the yes/true/1 family into a real boolean."""
    if value is None:
        return default
    return value.strip().lower() in TRUTHY


def parse_extensions(value):
    """'sqlite, .DB,db3' -> ('sqlite', 'db', 'db3')"""
    exts = []
    for raw in (value or "").split(","):
        ext = raw.strip().lstrip(".").lower()
        if ext and ext not in exts:
            exts.append(ext)
    return tuple(exts)


def _read_config_file(path):
    if not path:
        return {}
    if not os.path.exists(path):
        raise ConfigError(f"Configuration file not found at {path}")
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)
    if not parser.has_section("settings"):
        return {}
    return {k.upper(): v for k, v in parser.items("settings")}


def _lookup(env, file_values, name):
    """Environment first, then the INI file. Returns None when unset."""
    if name in env:
        value = env[name]
    elif name in file_values:
        value = file_values[name]
    else:
        return None
    if value == UNSET_MARKER:
        return None
    return value


def load_settings(environ=None):
    """Builds Settings from the environment (and SQLITE_BACKUP_CONFIG if given)."""
    env = os.environ if environ is None else environ
    file_values = _read_config_file(env.get("SQLITE_BACKUP_CONFIG", "").strip())

    def get(name, default=""):
        value = _lookup(env, file_values, name)
        return default if value is None else value

    db_paths = get("SQLITE_DB_PATHS") or get("SQLITE_DB_PATH")

    # Unset means default gzip; explicitly empty disables compression
    compression = _lookup(env, file_values, "COMPRESSION_CMD")
    if compression is None:
        compression = DEFAULT_COMPRESSION_CMD

    limit_raw = get("UPLOAD_LIMIT_MB", "0").strip() or "0"
    try:
        upload_limit = int(limit_raw)
    except ValueError:
        raise ConfigError(f"UPLOAD_LIMIT_MB must be an integer, got {limit_raw!r}")

    return Settings(
        db_paths=db_paths,
        root_dir=get("SQLITE_DB_ROOT_DIR").strip(),
        include_sub_dir=parse_bool(get("INCLUDE_SUB_DIR")),
        include_assets=parse_bool(get("INCLUDE_NON_SQL_ASSETS")),
        extensions=parse_extensions(get("SQLITE_EXTS")),
        dry_run=parse_bool(get("DRY_RUN")),
        access_key=get("S3_ACCESS_KEY_ID").strip(),
        secret_key=get("S3_SECRET_ACCESS_KEY").strip(),
        bucket=get("S3_BUCKET").strip(),
        region=get("S3_REGION", "us-west-1").strip(),
        prefix=get("S3_PREFIX", "backup").strip(),
        endpoint=get("S3_ENDPOINT").strip(),
        s3v4=parse_bool(get("S3_S3V4")),
        force_path_style=parse_bool(get("AWS_S3_FORCE_PATH_STYLE")),
        bundle_archive=parse_bool(get("BUNDLE_ARCHIVE", "yes")),
        archive_format=(get("ARCHIVE_FORMAT", "tar.gz").strip().lower() or "tar.gz"),
        archive_ext=get("ARCHIVE_EXT").strip().lstrip("."),
        compression_cmd=compression.strip(),
        encryption_password=get("ENCRYPTION_PASSWORD"),
        delete_older_than=get("DELETE_OLDER_THAN").strip(),
        upload_limit_mb=upload_limit,
        transaction_log=get("TRANSACTION_LOG").strip(),
        scratch_dir=get("SCRATCH_DIR").strip(),
        gpg_binary=get("GPG_BINARY", "gpg").strip() or "gpg",
    )


def validate_settings(settings):
    """Pre-run checks. Raises ConfigError listing the first problem found."""
    if not settings.dry_run:
        for name, value in (("S3_ACCESS_KEY_ID", settings.access_key),
                            ("S3_SECRET_ACCESS_KEY", settings.secret_key),
                            ("S3_BUCKET", settings.bucket)):
            if not value:
                raise ConfigError(f"You need to set the {name} environment variable.")

    if not settings.has_sources:
        raise ConfigError("Set SQLITE_DB_PATHS and/or SQLITE_DB_ROOT_DIR to choose what to back up.")

    if settings.archive_format not in ARCHIVE_FORMATS:
        raise ConfigError(
            f"ARCHIVE_FORMAT must be one of {', '.join(ARCHIVE_FORMATS)}, got {settings.archive_format!r}")

    if settings.upload_limit_mb < 0:
        raise ConfigError("UPLOAD_LIMIT_MB cannot be negative")
