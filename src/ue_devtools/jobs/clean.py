"""Removal of generated build folders under an Unreal project."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field

from ue_devtools.jobs.log_sink import LogSink
from ue_devtools.jobs.models import LogSeverity
from ue_devtools.jobs.resolver import UnrealProject

logger = logging.getLogger(__name__)

BUILD_FOLDERS: tuple[str, ...] = ("Binaries", "Intermediate", "Saved")


@dataclass(slots=True)
class CleanResult:
    """Folders handled by one clean pass."""

    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


def clean_build_folders(
    project: UnrealProject,
    log: LogSink,
    *,
    folders: Sequence[str] = BUILD_FOLDERS,
) -> CleanResult:
    """Delete generated folders below the project root, logging one line per folder.

    Missing folders are skipped. A folder that cannot be removed is reported and
    the remaining ones are still attempted.
    """

    result = CleanResult()
    log.append("Cleaning build files...", LogSeverity.INFO)
    for folder in folders:
        target = project.root / folder
        if not target.is_dir():
            result.skipped.append(folder)
            continue
        try:
            shutil.rmtree(target)
        except OSError as error:
            logger.warning("Failed to remove %s: %s", target, error)
            result.failed[folder] = str(error)
            log.append(f"Clean failed: {folder}: {error}", LogSeverity.ERROR)
            continue
        logger.info("Removed %s", target)
        result.removed.append(folder)
        log.append(f"Cleaned: {folder}", LogSeverity.INFO)

    if result.success:
        log.append("Clean completed successfully", LogSeverity.INFO)
    return result
