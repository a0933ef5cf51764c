"""Package source resolution.

A package is installed from exactly one source:
- ArchiveSource: a built package zip (--zip)
- DirectorySource: a package root directory (--root, or auto-discovered)

Resolution order:
1. Explicit archive path
2. Explicit directory path
3. Nearest ancestor of the working directory holding a manifest file
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from errors import SourceNotFound

logger = logging.getLogger(__name__)

# Manifest file names recognised at the top level of a package
MANIFEST_FILENAMES = ('manifest.yml', 'manifest.yaml')


@dataclass(frozen=True)
class ArchiveSource:
    """Package zip built ahead of time."""
    path: Path

    kind = 'archive'

    def __post_init__(self):
        object.__setattr__(self, 'path', Path(self.path))

    def __str__(self) -> str:
        return f"archive {self.path}"


@dataclass(frozen=True)
class DirectorySource:
    """Package root directory containing manifest.yml."""
    path: Path

    kind = 'directory'

    def __post_init__(self):
        object.__setattr__(self, 'path', Path(self.path))

    def __str__(self) -> str:
        return f"directory {self.path}"


InstallSource = Union[ArchiveSource, DirectorySource]


def find_manifest_file(directory: Path) -> Optional[Path]:
    """Return the manifest file directly under directory, if any."""
    for filename in MANIFEST_FILENAMES:
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    return None


def find_package_root(start: Optional[Path] = None) -> Optional[Path]:
    """Walk upward from start looking for a package root.

    Args:
        start: Directory to start from (default: current working directory)

    Returns:
        First directory (start itself included) holding a manifest file,
        or None when the filesystem root is reached without a match.
    """
    current = Path(start) if start is not None else Path.cwd()
    current = current.resolve()

    for directory in (current, *current.parents):
        if find_manifest_file(directory) is not None:
            logger.debug(f"Found package root: {directory}")
            return directory

    return None


def resolve_source(
    archive: Optional[Union[str, Path]] = None,
    directory: Optional[Union[str, Path]] = None,
    cwd: Optional[Path] = None,
) -> InstallSource:
    """Decide which package artifact to install.

    The archive always wins when both explicit inputs are given. Archive
    contents are not inspected here.

    Args:
        archive: Path to a package zip
        directory: Path to a package root directory
        cwd: Starting point for auto-discovery (default: current directory)

    Returns:
        ArchiveSource or DirectorySource

    Raises:
        SourceNotFound: If no explicit input is given and no ancestor
            directory holds a manifest file
    """
    if archive:
        if directory:
            logger.warning(
                f"Both package archive ({archive}) and package root ({directory}) "
                f"given; installing the archive"
            )
        return ArchiveSource(Path(archive))

    if directory:
        return DirectorySource(Path(directory))

    start = Path(cwd) if cwd is not None else Path.cwd()
    root = find_package_root(start)
    if root is None:
        raise SourceNotFound(
            f"package root not found (no {MANIFEST_FILENAMES[0]} in {start} or its parents)"
        )

    logger.info(f"Using package root: {root}")
    return DirectorySource(root)
