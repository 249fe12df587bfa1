#!/usr/bin/env python3
"""
PostgreSQL-in-Docker Backup Job
Dumps every configured database container with pg_dumpall, compresses the
dump with zstd and prunes backups older than the retention window.

Intended to be run once per cycle by cron or a systemd timer:
  - exit code 0: every target was backed up
  - exit code 1: at least one target failed (see the log)

Backups are written as:
  {BACKUP_DIR}/{container}-backup-YYYY-MM-DD_HH-MM-SS.sql.zst
"""

import os
import sys
import glob
import time
import logging
from enum import Enum
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

import docker
import zstandard as zstd
from docker.errors import DockerException

logger = logging.getLogger(__name__)

# Constants
BACKUP_DIR = Path(os.getenv('BACKUP_DIR', '/opt/r2_backup/pg_backups'))
DAYS_TO_KEEP = int(os.getenv('DAYS_TO_KEEP', '7'))
COMMAND_TIMEOUT = int(os.getenv('COMMAND_TIMEOUT', '600'))  # seconds, per Docker call
LOG_FILE_NAME = 'backup.log'

DUMP_EXTENSION = 'sql'
COMPRESSION_EXTENSION = 'zst'
ARTIFACT_SUFFIX = f'.{DUMP_EXTENSION}.{COMPRESSION_EXTENSION}'
TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'
ZSTD_LEVEL = 3

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


# =============================================================================
# LOGGING
# =============================================================================

_installed_handlers: List[logging.Handler] = []


def configure_logging(log_file: Optional[Path] = None, level: int = logging.INFO) -> None:
    """Send log lines to stdout and append them to log_file.

    An unwritable log file is reported as a warning and the job keeps
    logging to stdout only.
    """
    for handler in _installed_handlers:
        logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    _installed_handlers.append(console_handler)

    file_error = None
    if log_file is not None:
        try:
            file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        except OSError as e:
            file_error = e
        else:
            file_handler.setFormatter(formatter)
            _installed_handlers.append(file_handler)

    for handler in _installed_handlers:
        logger.addHandler(handler)
    logger.setLevel(level)

    if file_error is not None:
        logger.warning(f"Cannot write log file {log_file}: {file_error}; logging to stdout only")


def format_size(size_bytes: int) -> str:
    """Human-readable size using binary prefixes (1 KB = 1024 bytes)."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    size = float(size_bytes)
    for unit in ('KB', 'MB', 'GB', 'TB'):
        size /= 1024
        if size < 1024 or unit == 'TB':
            return f"{size:.1f} {unit}"


# =============================================================================
# ERRORS
# =============================================================================

class BackupError(Exception):
    """Base class for failures of a single target's backup."""

    def __init__(self, target_name: str, message: str):
        super().__init__(message)
        self.target_name = target_name


class TargetNotFound(BackupError):
    """The container does not exist or is not running."""


class ServiceNotReady(BackupError):
    """PostgreSQL inside the container does not accept connections."""


class DumpFailed(BackupError):
    """pg_dumpall or the compression stage failed."""


class EmptyOrCorruptArtifact(BackupError):
    """The written backup file is missing or empty."""


class BackupDirectoryError(Exception):
    """The backup directory cannot be created; the whole run is aborted."""


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Target:
    """A database container to back up."""
    name: str
    user: str = 'postgres'


@dataclass(frozen=True)
class RetentionPolicy:
    max_age_days: int = 7

    def cutoff(self, now: datetime) -> datetime:
        """Files last modified strictly before this moment are expired."""
        return now - timedelta(days=self.max_age_days)


@dataclass(frozen=True)
class BackupSettings:
    """Everything a run needs. Built once at startup and never mutated."""
    targets: Tuple[Target, ...]
    backup_dir: Path
    retention: RetentionPolicy = RetentionPolicy()
    command_timeout: int = 600
    log_file: Optional[Path] = None

    def __post_init__(self):
        # Accept lists and plain strings from callers, store immutable values
        object.__setattr__(self, 'targets', tuple(self.targets))
        object.__setattr__(self, 'backup_dir', Path(self.backup_dir))
        if self.log_file is None:
            object.__setattr__(self, 'log_file', self.backup_dir / LOG_FILE_NAME)


# Containers with PostgreSQL to back up
TARGETS: Tuple[Target, ...] = (
    Target('remnawave-db', 'postgres'),
    Target('remnawave-tg-shop-db-trib', 'postgres'),
)


def default_settings() -> BackupSettings:
    """Settings from the module constants."""
    return BackupSettings(
        targets=TARGETS,
        backup_dir=BACKUP_DIR,
        retention=RetentionPolicy(DAYS_TO_KEEP),
        command_timeout=COMMAND_TIMEOUT,
    )


# =============================================================================
# RUN STATE
# =============================================================================

class TargetState(Enum):
    PENDING = 'pending'
    CHECKING = 'checking'
    DUMPING = 'dumping'
    VALIDATING = 'validating'
    PRUNING = 'pruning'
    DONE = 'done'
    FAILED = 'failed'


@dataclass(frozen=True)
class BackupArtifact:
    """A validated backup file."""
    target_name: str
    created_at: datetime
    path: Path
    size_bytes: int


@dataclass
class RunStatistics:
    """Counters for one run of the job."""
    total_targets: int = 0
    success_count: int = 0
    failure_count: int = 0
    states: Dict[str, TargetState] = field(default_factory=dict)
    artifacts: List[BackupArtifact] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 0 if self.failure_count == 0 else 1


# =============================================================================
# AVAILABILITY CHECKS
# =============================================================================

class AvailabilityChecker:
    """Checks that a target container is running and PostgreSQL is ready."""

    def __init__(self, client):
        self.client = client

    def check_exists(self, name: str) -> bool:
        """True if a running container is named exactly `name`."""
        try:
            containers = self.client.containers.list(
                filters={'name': name, 'status': 'running'}
            )
        except (DockerException, OSError) as e:
            logger.error(f"Cannot list containers while looking for '{name}': {e}")
            return False

        # The daemon's name filter is a substring/regex match
        if not any(container.name == name for container in containers):
            logger.warning(f"Container '{name}' not found or not running")
            return False
        return True

    def check_ready(self, name: str, user: str) -> bool:
        """True if pg_isready succeeds inside the container."""
        try:
            container = self.client.containers.get(name)
            result = container.exec_run(['pg_isready', '-U', user])
        except (DockerException, OSError) as e:
            logger.error(f"PostgreSQL readiness probe could not run in '{name}': {e}")
            return False

        if result.exit_code != 0:
            logger.error(f"PostgreSQL in container '{name}' is not ready (pg_isready exit code {result.exit_code})")
            return False
        return True


# =============================================================================
# DUMP
# =============================================================================

def artifact_filename(target_name: str, now: datetime) -> str:
    return f"{target_name}-backup-{now.strftime(TIMESTAMP_FORMAT)}{ARTIFACT_SUFFIX}"


class DumpExecutor:
    """Runs pg_dumpall in a container and writes the zstd-compressed output."""

    def __init__(self, client, backup_dir: Path, level: int = ZSTD_LEVEL):
        self.client = client
        self.backup_dir = Path(backup_dir)
        self.level = level

    def dump(self, name: str, user: str, now: datetime) -> Path:
        """Write a compressed dump of the whole cluster and return its path.

        Both the exec exit code and the compression stage are checked. On any
        failure the partial file is removed and DumpFailed is raised.
        """
        backup_path = self.backup_dir / artifact_filename(name, now)
        stderr_chunks: List[bytes] = []

        try:
            exec_id = self.client.api.exec_create(
                name, ['pg_dumpall', '-U', user], stdout=True, stderr=True
            )['Id']
            output = self.client.api.exec_start(exec_id, stream=True, demux=True)

            compressor = zstd.ZstdCompressor(level=self.level)
            with open(backup_path, 'wb') as raw:
                with compressor.stream_writer(raw) as writer:
                    for stdout, stderr in output:
                        if stdout:
                            writer.write(stdout)
                        if stderr:
                            stderr_chunks.append(stderr)

            exit_code = self.client.api.exec_inspect(exec_id).get('ExitCode')
        except (DockerException, zstd.ZstdError, OSError) as e:
            self._discard(backup_path)
            logger.error(f"Failed to create backup for container '{name}': {e}")
            raise DumpFailed(name, str(e)) from e

        if exit_code != 0:
            self._discard(backup_path)
            details = b''.join(stderr_chunks).decode('utf-8', errors='replace').strip()
            logger.error(f"Failed to create backup for container '{name}': pg_dumpall exit code {exit_code}")
            if details:
                logger.error(f"pg_dumpall stderr: {details[-2000:]}")
            raise DumpFailed(name, f"pg_dumpall exited with {exit_code}")

        return backup_path

    @staticmethod
    def _discard(path: Path):
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove partial backup {path}: {e}")


# =============================================================================
# VALIDATION
# =============================================================================

class ArtifactValidator:
    """Rejects missing or empty backup files."""

    def validate(self, path: Path, target_name: Optional[str] = None) -> int:
        """Return the file size in bytes, or delete it and raise EmptyOrCorruptArtifact."""
        path = Path(path)
        name = target_name or path.name
        try:
            size_bytes = path.stat().st_size
        except FileNotFoundError:
            size_bytes = 0

        if size_bytes == 0:
            path.unlink(missing_ok=True)
            logger.error(f"Backup file for '{name}' is empty or corrupt, removed: {path}")
            raise EmptyOrCorruptArtifact(name, f"empty backup file {path}")

        logger.info(f"Backup '{name}' created: {path} (size: {format_size(size_bytes)})")
        return size_bytes


# =============================================================================
# RETENTION
# =============================================================================

class RetentionPruner:
    """Deletes backups older than the retention window."""

    LEGACY_PATTERN = f'backup-*{ARTIFACT_SUFFIX}'

    def __init__(self, backup_dir: Path):
        self.backup_dir = Path(backup_dir)

    def prune(self, name: str, max_age_days: int, now: datetime) -> int:
        """Delete this target's backups older than max_age_days; return how many."""
        logger.info(f"Removing backups of '{name}' older than {max_age_days} days...")

        pattern = f"{glob.escape(name)}-backup-*{ARTIFACT_SUFFIX}"
        deleted = self._delete_older_than(pattern, RetentionPolicy(max_age_days).cutoff(now))

        if deleted:
            logger.info(f"Removed {deleted} old backups of '{name}'")
        else:
            logger.info(f"No old backups of '{name}' found")
        return deleted

    def sweep_legacy(self, max_age_days: int, now: datetime) -> None:
        """Delete expired files left over from the unprefixed `backup-*` naming."""
        logger.info("--- Removing old backups with legacy names ---")
        self._delete_older_than(self.LEGACY_PATTERN, RetentionPolicy(max_age_days).cutoff(now))

    def list_artifacts(self) -> List[Path]:
        return sorted(p for p in self.backup_dir.glob(f'*{ARTIFACT_SUFFIX}') if p.is_file())

    def _delete_older_than(self, pattern: str, cutoff: datetime) -> int:
        deleted = 0
        for backup_file in sorted(self.backup_dir.glob(pattern)):
            if not backup_file.is_file():
                continue
            file_time = datetime.fromtimestamp(backup_file.stat().st_mtime)
            if file_time < cutoff:
                try:
                    backup_file.unlink()
                except OSError as e:
                    logger.error(f"Failed to remove old backup {backup_file}: {e}")
                    continue
                logger.info(f"Removed old backup: {backup_file}")
                deleted += 1
        return deleted


# =============================================================================
# BACKUP MANAGER
# =============================================================================

class BackupManager:
    """Backs up every configured target in turn and applies retention."""

    def __init__(self, settings: BackupSettings, client=None,
                 clock: Optional[Callable[[], datetime]] = None,
                 checker: Optional[AvailabilityChecker] = None,
                 dumper: Optional[DumpExecutor] = None,
                 validator: Optional[ArtifactValidator] = None,
                 pruner: Optional[RetentionPruner] = None):
        self.settings = settings
        self.clock = clock or datetime.now
        if client is None and (checker is None or dumper is None):
            client = docker.from_env(timeout=settings.command_timeout)
        self.checker = checker or AvailabilityChecker(client)
        self.dumper = dumper or DumpExecutor(client, settings.backup_dir)
        self.validator = validator or ArtifactValidator()
        self.pruner = pruner or RetentionPruner(settings.backup_dir)
        self.stats = RunStatistics()

    def ensure_backup_dir(self):
        try:
            self.settings.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupDirectoryError(f"Cannot create backup directory {self.settings.backup_dir}: {e}") from e

    def backup_target(self, target: Target, now: datetime) -> BackupArtifact:
        """Check, dump and validate one target. Raises a BackupError on failure."""
        logger.info(f"Starting backup of container: {target.name}")

        self._set_state(target, TargetState.CHECKING)
        if not self.checker.check_exists(target.name):
            raise TargetNotFound(target.name, f"container '{target.name}' is not running")
        if not self.checker.check_ready(target.name, target.user):
            raise ServiceNotReady(target.name, f"PostgreSQL in '{target.name}' is not ready")

        self._set_state(target, TargetState.DUMPING)
        path = self.dumper.dump(target.name, target.user, now)

        self._set_state(target, TargetState.VALIDATING)
        size_bytes = self.validator.validate(path, target.name)

        return BackupArtifact(target.name, now, path, size_bytes)

    def process_target(self, target: Target) -> bool:
        """Back up one target, record the outcome and prune on success."""
        logger.info(f"--- Processing container: {target.name} ---")
        start_time = time.time()
        now = self.clock()

        try:
            artifact = self.backup_target(target, now)
        except BackupError as e:
            self.stats.failure_count += 1
            self._set_state(target, TargetState.FAILED)
            logger.error(f"Backup of '{target.name}' failed ({type(e).__name__}): {e}")
            logger.info("")
            return False

        self.stats.success_count += 1
        self.stats.artifacts.append(artifact)
        logger.info(f"Backup of '{target.name}' finished in {time.time() - start_time:.2f}s")

        self._set_state(target, TargetState.PRUNING)
        self.pruner.prune(target.name, self.settings.retention.max_age_days, now)
        self._set_state(target, TargetState.DONE)
        logger.info("")
        return True

    def run(self) -> RunStatistics:
        """Run the job over all targets and return the statistics."""
        self.ensure_backup_dir()

        targets = self.settings.targets
        self.stats = RunStatistics(total_targets=len(targets))
        for target in targets:
            self.stats.states[target.name] = TargetState.PENDING

        logger.info("=== BACKUP STARTED ===")
        logger.info(f"Containers to process: {' '.join(t.name for t in targets)}")

        for target in targets:
            self.process_target(target)

        self.pruner.sweep_legacy(self.settings.retention.max_age_days, self.clock())

        logger.info("=== BACKUP FINISHED ===")
        logger.info("Summary:")
        logger.info(f"Total containers: {self.stats.total_targets}")
        logger.info(f"Successful backups: {self.stats.success_count}")
        logger.info(f"Failed backups: {self.stats.failure_count}")

        self.log_inventory()

        if self.stats.exit_code == 0:
            logger.info("All backups created successfully!")
        else:
            logger.warning("Finished with errors, check the log above.")
        return self.stats

    def log_inventory(self):
        """Log every backup currently in the backup directory."""
        logger.info("--- Backups in directory ---")
        for path in self.pruner.list_artifacts():
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            modified = datetime.fromtimestamp(stat.st_mtime).strftime(LOG_DATE_FORMAT)
            logger.info(f"{format_size(stat.st_size):>10}  {modified}  {path.name}")

    def _set_state(self, target: Target, state: TargetState):
        self.stats.states[target.name] = state
        logger.debug(f"{target.name}: {state.value}")


def main():
    """Main entry point."""
    settings = default_settings()

    try:
        settings.backup_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        configure_logging(None)
        logger.error(f"Cannot create backup directory {settings.backup_dir}: {e}")
        sys.exit(1)

    configure_logging(settings.log_file)

    try:
        manager = BackupManager(settings)
        stats = manager.run()
    except (BackupDirectoryError, DockerException) as e:
        logger.error(f"Backup run aborted: {e}")
        sys.exit(1)

    sys.exit(stats.exit_code)


if __name__ == '__main__':
    main()
