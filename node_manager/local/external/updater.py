"""
Installs node binaries from a local build staging directory.

The staging root holds one folder per build, named `<role>-<major>.<minor>.<patch>`
(e.g. `bitcoin-27.1`, `electrs-0.10.5`). For each role the highest version wins
and its executables replace the ones in the binaries directory. Every file is
written next to its target as `<name>.tmp` and renamed over it in one step, so
a running node never sees a half-written binary.

The staging and target directories are assumed to be owned exclusively by the
updater while it runs.
"""
import os
import re
import stat
import shutil
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from node_manager.local.errors import (
    CopyFailed,
    NoStagingSource,
    RenameFailed,
    StagingSubfolderMissing,
    UpdateError,
)
from node_manager.local.models import BinaryCandidate, Role, Version

log = logging.getLogger(__name__)

# Missing minor/patch components count as 0, so "27.0" sorts as (27, 0, 0).
_VERSION_RE = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?", re.ASCII)


#* --- Scanning ---
def parse_version(text: str) -> Optional[Version]:
    """
    Parses a dotted version string into an integer triple.

    :param text: e.g. "27.1" or "0.10.5".
    :return: The (major, minor, patch) tuple, or None if the text is not a version.
    """
    match = _VERSION_RE.fullmatch(text)
    if not match:
        return None
    return tuple(int(part) if part is not None else 0 for part in match.groups())


def parse_candidate(path: Path) -> Optional[BinaryCandidate]:
    """Interprets a staging folder name as a build candidate, or returns None."""
    prefix, sep, version_text = path.name.partition("-")
    if not sep:
        return None
    try:
        role = Role(prefix)
    except ValueError:
        return None
    version = parse_version(version_text)
    if version is None:
        return None
    return BinaryCandidate(role, version, path)


def scan(staging_dir: Path) -> List[BinaryCandidate]:
    """
    Lists the build candidates found directly inside the staging directory.

    Entries that are not directories or whose names do not follow the
    `<role>-<version>` convention are skipped.

    :param staging_dir: The staging root.
    :return: All well-formed candidates, in name order.
    :raises NoStagingSource: If the staging directory does not exist.
    """
    staging_dir = Path(staging_dir)
    if not staging_dir.is_dir():
        raise NoStagingSource(staging_dir)
    try:
        entries = sorted(staging_dir.iterdir())
    except OSError as e:
        raise NoStagingSource(staging_dir) from e

    candidates = []
    for entry in entries:
        if not entry.is_dir():
            continue
        candidate = parse_candidate(entry)
        if candidate is None:
            log.debug(f"Skipping staging entry with unexpected name: '{entry.name}'")
            continue
        candidates.append(candidate)
    return candidates


def select_latest(candidates: Iterable[BinaryCandidate]) -> Dict[Role, BinaryCandidate]:
    """Picks the candidate with the greatest version triple for each role."""
    latest: Dict[Role, BinaryCandidate] = {}
    for candidate in candidates:
        best = latest.get(candidate.role)
        if best is None or candidate.version > best.version:
            latest[candidate.role] = candidate
    return latest


#* --- Installation ---
def _make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP | stat.S_IROTH | stat.S_IXOTH)


def _discard(temp_path: Path) -> None:
    try:
        temp_path.unlink(missing_ok=True)
    except OSError as e:
        log.warning(f"Could not remove temporary file '{temp_path}': {e}")


def install_file(source: Path, target_dir: Path, name: str) -> Path:
    """
    Replaces `target_dir/name` with `source` atomically.

    :return: The path of the installed file.
    :raises CopyFailed: If the temporary copy could not be written. The target is untouched.
    :raises RenameFailed: If the final rename failed. The target is untouched.
    """
    target = target_dir / name
    temp_path = target_dir / f"{name}.tmp"
    try:
        shutil.copyfile(source, temp_path)
        _make_executable(temp_path)
    except OSError as e:
        _discard(temp_path)
        raise CopyFailed(f"Copying {name} to '{temp_path}' failed: {e}") from e

    try:
        os.replace(temp_path, target)
    except OSError as e:
        _discard(temp_path)
        raise RenameFailed(f"Renaming '{temp_path}' to '{target}' failed: {e}") from e
    log.debug(f"Installed '{source}' as '{target}'")
    return target


def install(candidate: BinaryCandidate, target_dir: Path, names: Optional[Sequence[str]] = None) -> List[str]:
    """
    Installs the executables of one candidate into the binaries directory.

    Executables absent from the candidate folder are skipped. The first failure
    aborts the remaining files of this candidate.

    :param candidate: The build to install.
    :param target_dir: The binaries directory.
    :param names: Executable names to install; defaults to the role's main binary.
    :return: The names that were installed.
    """
    target_dir = Path(target_dir)
    names = names or (candidate.role.binary_name,)
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise CopyFailed(f"Could not create binaries directory '{target_dir}': {e}") from e

    installed = []
    for name in names:
        source = Path(candidate.path) / name
        if not source.is_file():
            continue
        install_file(source, target_dir, name)
        installed.append(name)
    return installed


#* --- Update Run ---
class UpdateReport:
    """Outcome of one update run, per role."""

    def __init__(self, selected: Dict[Role, BinaryCandidate]):
        self.selected = selected
        self.updated: Dict[Role, List[str]] = {}
        self.errors: Dict[Role, UpdateError] = {}

    @property
    def nothing_to_update(self) -> bool:
        return not self.updated and not self.errors

    def summary_lines(self) -> List[str]:
        lines = []
        for role in Role:
            title = role.value.capitalize()
            if role in self.updated:
                folder = self.selected[role].folder_name
                lines.append(f"{title} ({folder}): {', '.join(self.updated[role])}")
            elif role in self.errors:
                lines.append(f"{title} update error: {self.errors[role]}")
        return lines


def find_helper_app(config: Any) -> Optional[Path]:
    """Returns the path of the installed build helper application, if present."""
    path = Path(config.HELPER_APP_PATH)
    return path if path.exists() else None


class BinaryUpdater:
    """Copies the newest staged builds into the configured binaries directory."""

    def __init__(self, config: Any = None):
        if config is None:
            from node_manager.local.config import effective_settings
            config = effective_settings
        self.config = config
        self.staging_parent = Path(config.STAGING_PARENT)
        self.staging_root = Path(config.STAGING_ROOT)

    def run(self) -> UpdateReport:
        """
        BLOCKING: Scans the staging root and installs the latest build of each role.

        A failure while installing one role is recorded in the report and does
        not affect the other role.

        :raises StagingSubfolderMissing: If the build folder exists without its `binaries/` sub-folder.
        :raises NoStagingSource: If there is no build folder at all.
        """
        if not self.staging_root.is_dir():
            if self.staging_parent.is_dir():
                raise StagingSubfolderMissing(self.staging_root)
            raise NoStagingSource(self.staging_parent)

        selected = select_latest(scan(self.staging_root))
        report = UpdateReport(selected)
        if not selected:
            log.info(f"No versioned build folders found in '{self.staging_root}'.")
            return report

        target_dir = Path(self.config.BINARIES_DIR)
        for role, candidate in selected.items():
            names = self.config.ROLE_BINARIES.get(role.value, (role.binary_name,))
            log.info(f"Installing {candidate.folder_name} into '{target_dir}'...")
            try:
                installed = install(candidate, target_dir, names)
            except UpdateError as e:
                log.error(f"Update of {role.value} from {candidate.folder_name} failed: {e}")
                report.errors[role] = e
                continue
            if installed:
                report.updated[role] = installed
                log.info(f"Updated {role.value} to {candidate.version_string}: {', '.join(installed)}")
        return report
