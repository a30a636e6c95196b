"""
Backup Restore
==============

Decides whether the remote backup supersedes local state and copies it
over when it does.

Backup layout (mounted at the backup dir):
- {backup}/clawdbot/clawdbot.json - current layout
- {backup}/clawdbot.json - legacy flat layout (lower precedence)
- {backup}/skills/ - skills, restored alongside the config
- {backup}/.last-sync - timestamp written by the external sync job
"""

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

from ..config import CONFIG_FILE_NAME, SYNC_MARKER_NAME
from ..schemas import BackupManifest, RestoreResult

logger = logging.getLogger(__name__)


def parse_sync_timestamp(raw: str) -> float:
    """
    Convert a .last-sync value to epoch seconds.

    Accepts ISO-8601 (with or without a trailing Z) or integer epoch
    seconds. Anything else is treated as epoch 0.
    """
    text = (raw or "").strip()
    if not text:
        return 0.0
    if text.isdigit():
        return float(text)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def read_manifest(path: Path, log: logging.Logger = logger) -> BackupManifest | None:
    """Read a .last-sync marker; None if it doesn't exist."""
    if not path.is_file():
        return None
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        log.warning(f"Could not read sync marker {path}: {e}")
        raw = ""
    return BackupManifest(path=path, raw=raw, epoch=parse_sync_timestamp(raw))


def should_restore(
    remote_manifest_path: Path,
    local_manifest_path: Path,
    log: logging.Logger = logger,
) -> bool:
    """
    Decide whether the remote backup is newer than local state.

    Args:
        remote_manifest_path: .last-sync inside the backup mount
        local_manifest_path: .last-sync inside the config dir

    Returns:
        True if local state should be overwritten from the backup
    """
    remote = read_manifest(remote_manifest_path, log)
    if remote is None:
        log.info("No backup sync timestamp found, skipping restore")
        return False

    local = read_manifest(local_manifest_path, log)
    if local is None:
        log.info("No local sync timestamp, will restore from backup")
        return True

    log.info(f"Backup last sync: {remote.raw!r}, local last sync: {local.raw!r}")
    if remote.epoch > local.epoch:
        log.info("Backup is newer, will restore")
        return True

    log.info("Local data is newer or same, skipping restore")
    return False


def find_backup_source(backup_dir: Path) -> Path | None:
    """Locate the config tree inside the backup, preferring the current layout."""
    current = backup_dir / "clawdbot"
    if (current / CONFIG_FILE_NAME).is_file():
        return current
    if (backup_dir / CONFIG_FILE_NAME).is_file():
        return backup_dir
    return None


def _has_entries(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())


def restore_from_backup(
    backup_dir: Path,
    config_dir: Path,
    skills_dir: Path,
    log: logging.Logger = logger,
) -> RestoreResult:
    """
    Restore config and skills from the backup mount when it is newer.

    The restore decision is made once and applies to both trees. The
    remote .last-sync is copied last so a repeated run with the same
    backup no longer restores.

    Returns:
        RestoreResult describing what was copied
    """
    remote_marker = backup_dir / SYNC_MARKER_NAME
    local_marker = config_dir / SYNC_MARKER_NAME

    source = find_backup_source(backup_dir)
    skills_source = backup_dir / "skills"
    has_skills = _has_entries(skills_source)

    if source is None and not has_skills:
        if backup_dir.is_dir():
            log.info(f"Backup mounted at {backup_dir} but no backup data found yet")
            return RestoreResult(reason="empty")
        log.info("Backup not mounted, starting fresh")
        return RestoreResult(reason="not_mounted")

    if not should_restore(remote_marker, local_marker, log):
        return RestoreResult(source=source, reason="up_to_date")

    result = RestoreResult(source=source, reason="restored")
    config_dir.mkdir(parents=True, exist_ok=True)

    if source is not None:
        layout = "legacy " if source == backup_dir else ""
        log.info(f"Restoring from {layout}backup at {source}...")
        shutil.copytree(source, config_dir, dirs_exist_ok=True)
        result.restored_config = True
        log.info("Restored config from backup")

    if has_skills:
        log.info(f"Restoring skills from {skills_source}...")
        skills_dir.mkdir(parents=True, exist_ok=True)
        shutil.copytree(skills_source, skills_dir, dirs_exist_ok=True)
        result.restored_skills = True
        log.info("Restored skills from backup")

    try:
        shutil.copy2(remote_marker, local_marker)
    except OSError as e:
        log.warning(f"Failed to record restored sync timestamp: {e}")

    return result
