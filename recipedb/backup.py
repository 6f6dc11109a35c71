"""Backup and restore through the PostgreSQL client tools.

SQL backups are produced by ``pg_dump`` in plain format and restored with
``psql``. CSV backups are a zip archive holding one ``<table>.csv`` member per
table, written and read with ``COPY``. Every external process runs with a
timeout; a dump is written to a ``.partial`` file and only renamed into place
once the tool exits successfully.
"""

import gzip
import io
import logging
import os
import re
import shutil
import subprocess
import zipfile
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .config import RecipeDBConfig
from .exceptions import BackupError, InvalidBackupError, RestoreError

logger = logging.getLogger(__name__)

BACKUP_PATTERNS = ("backup-*.sql", "backup-*.zip", "backup-*.sql.gz")
PARTIAL_SUFFIX = ".partial"
_SQL_MARKERS = re.compile(rb"\b(CREATE|INSERT|COPY)\b")
_STDERR_TAIL = 2000


@dataclass
class BackupInfo:
    """A completed backup file."""
    filename: str
    path: str
    size: int
    created: datetime
    format: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created'] = self.created.isoformat()
        return data


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"


def _backup_format(path: Path) -> str:
    name = path.name
    if name.endswith(".sql.gz"):
        return "sql.gz"
    if name.endswith(".zip"):
        return "csv"
    return "sql"


class BackupService:
    """Create, list, validate, prune and restore database backups."""

    def __init__(self, config: RecipeDBConfig, engine: Optional[Engine] = None):
        self.config = config
        self.backup_config = config.backup
        self.engine = engine
        self.backup_dir = Path(self.backup_config.directory)
        self.logger = logging.getLogger(__name__ + '.BackupService')

    # -- helpers -----------------------------------------------------------

    def _pg(self):
        if self.config.database.type != "postgresql":
            raise BackupError("Backup and restore require a PostgreSQL database")
        return self.config.database.postgresql

    def _connection_args(self) -> List[str]:
        pg = self._pg()
        return ["-h", pg.host, "-p", str(pg.port), "-U", pg.username, "-d", pg.database, "--no-password"]

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["PGPASSWORD"] = self._pg().password or ""
        return env

    def _run(self, cmd: List[str], error_cls=BackupError) -> subprocess.CompletedProcess:
        """Run an external tool once, bounded by the configured timeout."""
        timeout = self.backup_config.timeout_seconds
        self.logger.debug(f"Running {cmd[0]} with timeout {timeout}s")
        try:
            # subprocess.run kills the child when the timeout expires
            result = subprocess.run(
                cmd,
                env=self._env(),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise error_cls(f"{cmd[0]} timed out after {timeout}s", exit_code=None) from e
        except OSError as e:
            raise error_cls(f"Could not start {cmd[0]}: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[-_STDERR_TAIL:]
            raise error_cls(
                f"{cmd[0]} exited with code {result.returncode}: {stderr}",
                exit_code=result.returncode,
                stderr=stderr,
            )
        return result

    def _public_tables(self) -> List[str]:
        if self.engine is None:
            raise BackupError("A database engine is required for CSV backups")
        with self.engine.connect() as conn:
            rows = conn.execute(text(
                "SELECT tablename FROM pg_tables WHERE schemaname = 'public' ORDER BY tablename"
            ))
            return [row[0] for row in rows]

    def _resolve_tables(self, tables: Optional[Sequence[str]]) -> List[str]:
        known = self._public_tables()
        if not tables:
            return known
        unknown = [t for t in tables if t not in known]
        if unknown:
            raise BackupError(f"Unknown tables: {', '.join(unknown)}")
        return list(tables)

    # -- create ------------------------------------------------------------

    def create_backup(self, tables: Optional[Sequence[str]] = None, fmt: Optional[str] = None,
                      output_dir: Optional[str] = None, compress: Optional[bool] = None) -> BackupInfo:
        """Create a backup and return the finished file.

        Raises:
            BackupError: when the dump tool fails or times out, or compression
                fails; no file is left behind in that case.
        """
        fmt = fmt or self.backup_config.default_format
        if fmt not in ("sql", "csv"):
            raise BackupError(f"Unsupported backup format: {fmt}")
        compress = self.backup_config.compress if compress is None else compress
        compress = compress and fmt == "sql"

        target_dir = Path(output_dir) if output_dir else self.backup_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        extension = "sql" if fmt == "sql" else "zip"
        final_path = target_dir / f"backup-{_timestamp()}.{extension}"
        partial_path = final_path.with_name(final_path.name + PARTIAL_SUFFIX)

        self.logger.info(f"Creating {fmt} backup at {final_path}")
        try:
            if fmt == "sql":
                self._dump_sql(partial_path, tables)
            else:
                self._dump_csv(partial_path, tables)
            if compress:
                final_path = final_path.with_name(final_path.name + ".gz")
                self.compress_backup(partial_path, final_path)
                partial_path.unlink()
            else:
                partial_path.replace(final_path)
        except Exception:
            partial_path.unlink(missing_ok=True)
            raise

        info = self._info(final_path)
        self.logger.info(f"Backup created: {info.filename} ({info.size} bytes)")
        return info

    def _dump_sql(self, path: Path, tables: Optional[Sequence[str]]) -> None:
        cmd = [self.backup_config.pg_dump_path] + self._connection_args() + [
            "--verbose",
            "--clean",
            "--if-exists",
            "--format=plain",
            f"--file={path}",
        ]
        for table in tables or []:
            cmd.extend(["-t", table])
        self._run(cmd)

    def _dump_csv(self, path: Path, tables: Optional[Sequence[str]]) -> None:
        names = self._resolve_tables(tables)
        raw = self.engine.raw_connection()
        try:
            cursor = raw.cursor()
            with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for table in names:
                    buffer = io.StringIO()
                    cursor.copy_expert(f'COPY "{table}" TO STDOUT WITH CSV HEADER', buffer)
                    archive.writestr(f"{table}.csv", buffer.getvalue())
                    self.logger.debug(f"Exported table {table}")
            cursor.close()
        except Exception as e:
            raise BackupError(f"CSV export failed: {e}") from e
        finally:
            raw.close()

    def compress_backup(self, source: Path, target: Path) -> Path:
        """Gzip ``source`` into ``target``.

        The archive is written next to ``target`` with a partial suffix and only
        renamed once complete. A failed compression leaves no file behind.
        """
        partial = target.with_name(target.name + PARTIAL_SUFFIX)
        try:
            with open(source, "rb") as src, gzip.open(partial, "wb") as dst:
                shutil.copyfileobj(src, dst)
            partial.replace(target)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise BackupError(f"Compressing {target.name} failed: {e}") from e
        self.logger.info(f"Compressed backup to {target.name}")
        return target

    # -- list / prune --------------------------------------------------------

    def _info(self, path: Path) -> BackupInfo:
        stat = path.stat()
        return BackupInfo(
            filename=path.name,
            path=str(path),
            size=stat.st_size,
            created=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            format=_backup_format(path),
        )

    def list_backups(self, directory: Optional[str] = None) -> List[BackupInfo]:
        """Completed backups, newest first. Partial files are never listed."""
        directory = Path(directory) if directory else self.backup_dir
        if not directory.exists():
            return []
        paths = set()
        for pattern in BACKUP_PATTERNS:
            paths.update(directory.glob(pattern))
        backups = [self._info(p) for p in paths if p.is_file()]
        return sorted(backups, key=lambda b: b.created, reverse=True)

    def clean_old_backups(self, keep_days: Optional[int] = None,
                          directory: Optional[str] = None) -> List[str]:
        """Delete backups older than ``keep_days`` and return their names."""
        keep_days = self.backup_config.keep_days if keep_days is None else keep_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=keep_days)
        removed = []
        for backup in self.list_backups(directory):
            if backup.created < cutoff:
                Path(backup.path).unlink(missing_ok=True)
                removed.append(backup.filename)
                self.logger.info(f"Removed old backup {backup.filename}")
        return removed

    # -- validate / restore --------------------------------------------------

    def validate_backup(self, path) -> BackupInfo:
        """Check that ``path`` looks like a usable backup.

        Raises:
            InvalidBackupError: for missing, empty or unrecognised files.
        """
        path = Path(path)
        if not path.is_file():
            raise InvalidBackupError(f"Backup file not found: {path}")
        if path.stat().st_size == 0:
            raise InvalidBackupError(f"Backup file is empty: {path.name}")

        fmt = _backup_format(path)
        if fmt == "csv":
            if not zipfile.is_zipfile(path):
                raise InvalidBackupError(f"Backup archive is corrupt: {path.name}")
            with zipfile.ZipFile(path) as archive:
                if not any(n.endswith(".csv") for n in archive.namelist()):
                    raise InvalidBackupError(f"Backup archive holds no CSV files: {path.name}")
        else:
            opener = gzip.open if fmt == "sql.gz" else open
            try:
                with opener(path, "rb") as f:
                    if not self._has_sql_markers(f):
                        raise InvalidBackupError(f"Backup file contains no SQL statements: {path.name}")
            except (OSError, EOFError) as e:
                raise InvalidBackupError(f"Backup file is unreadable: {path.name}: {e}") from e

        return self._info(path)

    @staticmethod
    def _has_sql_markers(stream, chunk_size: int = 1024 * 1024) -> bool:
        tail = b""
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                return False
            if _SQL_MARKERS.search(tail + chunk):
                return True
            tail = chunk[-16:]

    def restore_backup(self, path, dry_run: bool = False) -> Dict[str, Any]:
        """Restore ``path`` into the configured database.

        The file is validated before anything touches the database; a dry run
        stops after validation.
        """
        info = self.validate_backup(path)
        path = Path(info.path)
        self.logger.info(f"Restoring backup {info.filename} ({info.format})")
        if dry_run:
            return {'file': info.filename, 'format': info.format, 'dry_run': True, 'restored': False}

        if info.format == "sql":
            self._restore_sql(path)
        elif info.format == "sql.gz":
            temp_path = path.with_name(path.name[:-3] + ".restoring")
            try:
                with gzip.open(path, "rb") as src, open(temp_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                self._restore_sql(temp_path)
            finally:
                temp_path.unlink(missing_ok=True)
        else:
            self._restore_csv(path)

        self.logger.info(f"Restore of {info.filename} completed")
        return {'file': info.filename, 'format': info.format, 'dry_run': False, 'restored': True}

    def _restore_sql(self, path: Path) -> None:
        cmd = [self.backup_config.psql_path] + self._connection_args() + [
            "-v", "ON_ERROR_STOP=1",
            "-f", str(path),
        ]
        self._run(cmd, error_cls=RestoreError)

    def _restore_csv(self, path: Path) -> None:
        if self.engine is None:
            raise RestoreError("A database engine is required for CSV restores")
        known = set(self._public_tables())
        raw = self.engine.raw_connection()
        try:
            cursor = raw.cursor()
            with zipfile.ZipFile(path) as archive:
                for member in archive.namelist():
                    table = Path(member).stem
                    if table not in known:
                        raise RestoreError(f"Archive member {member} does not match a table")
                    with archive.open(member) as data:
                        cursor.copy_expert(
                            f'COPY "{table}" FROM STDIN WITH CSV HEADER',
                            io.TextIOWrapper(data, encoding="utf-8"),
                        )
                    self.logger.debug(f"Imported table {table}")
            raw.commit()
            cursor.close()
        except RestoreError:
            raw.rollback()
            raise
        except Exception as e:
            raw.rollback()
            raise RestoreError(f"CSV restore failed: {e}") from e
        finally:
            raw.close()
