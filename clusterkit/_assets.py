"""Stage generated files and flush them to the working directory.

Assets are staged in memory and written at explicit synchronization points.
Writes are atomic per file and skip identical content, so flushing the same
assets repeatedly leaves the directory unchanged. Assets marked ``remote``
are also mirrored to the state bucket, which requires a held state lock.

Examples
--------
>>> store = AssetStore(Path(tempfile.mkdtemp()))
>>> store.stage("tf/output.json", b"{}")
>>> store.flush("tf/*")
['tf/output.json']
"""

from __future__ import annotations

import fnmatch
import logging
import os
import tempfile
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from clusterkit._cluster_errors import AssetError

if TYPE_CHECKING:
    from clusterkit._remote_state import RemoteStateScope

logger = logging.getLogger(__name__)

BUNDLED_ASSETS_DIR = Path(__file__).resolve().parent / "assets"
ASSET_FILE_MODE = 0o644


@dataclass(frozen=True, slots=True)
class Asset:
    """A named blob of content pending write.

    Attributes
    ----------
    path
        Relative POSIX path under the working directory.
    content
        Bytes to write.
    remote
        Whether the asset is mirrored to the state bucket.
    """

    path: str
    content: bytes
    remote: bool = False


def normalize_asset_path(path: str) -> str:
    """Validate a relative asset path and return it in POSIX form.

    Examples
    --------
    >>> normalize_asset_path("tf/./output.json")
    'tf/output.json'
    """
    rel = PurePosixPath(path.replace("\\", "/"))
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        msg = f"Refusing to stage asset outside the working directory: {path!r}"
        raise AssetError(msg)
    return rel.as_posix()


def matches(path: str, pattern: str) -> bool:
    """Match ``path`` against a glob whose ``*`` never crosses ``/``.

    Examples
    --------
    >>> matches("tf/output.json", "tf/*")
    True
    >>> matches("tf/data/x", "tf/*")
    False
    """
    path_parts = PurePosixPath(path).parts
    pattern_parts = PurePosixPath(pattern).parts
    if len(path_parts) != len(pattern_parts):
        return False
    return all(
        fnmatch.fnmatchcase(part, glob)
        for part, glob in zip(path_parts, pattern_parts)
    )


def write_atomic(dest: Path, content: bytes, mode: int = ASSET_FILE_MODE) -> bool:
    """Write ``content`` to ``dest`` unless it already holds those bytes.

    The file ends up with ``mode`` rather than the 0600 of the temp file.
    Returns whether the file changed.
    """
    if dest.is_file() and dest.read_bytes() == content:
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
    except Exception:
        with suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
    Path(tmp_name).replace(dest)
    os.chmod(dest, mode)
    return True


class AssetStore:
    """Staged assets for one run, rooted at the cluster working directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._assets: dict[str, Asset] = {}

    def stage(self, path: str, content: bytes | str, *, remote: bool = False) -> None:
        """Record ``content`` for ``path``, replacing anything staged before."""
        key = normalize_asset_path(path)
        data = content.encode("utf-8") if isinstance(content, str) else content
        self._assets[key] = Asset(path=key, content=data, remote=remote)

    def stage_tree(self, source: Path = BUNDLED_ASSETS_DIR) -> int:
        """Stage every file below ``source`` under its relative path.

        Returns
        -------
        int
            Number of files staged.
        """
        count = 0
        for file_path in sorted(source.rglob("*")):
            if not file_path.is_file():
                continue
            if file_path.name == "__pycache__" or "__pycache__" in file_path.parts:
                continue
            rel = file_path.relative_to(source).as_posix()
            self.stage(rel, file_path.read_bytes())
            count += 1
        return count

    def staged(self, *patterns: str) -> list[Asset]:
        """Return staged assets matching any of ``patterns`` (all if none)."""
        return [
            asset
            for path, asset in sorted(self._assets.items())
            if not patterns or any(matches(path, pattern) for pattern in patterns)
        ]

    def flush(self, *patterns: str, remote: RemoteStateScope | None = None) -> list[str]:
        """Write staged assets matching ``patterns`` to their destinations.

        Parameters
        ----------
        *patterns
            Glob patterns selecting assets; every asset when omitted.
        remote
            Held remote state scope used for assets marked ``remote``.

        Returns
        -------
        list[str]
            Paths of the assets flushed.

        Raises
        ------
        AssetError
            When a remote asset is flushed without a held state lock.
        """
        selected = self.staged(*patterns)
        if remote is None and any(asset.remote for asset in selected):
            names = ", ".join(asset.path for asset in selected if asset.remote)
            msg = f"Remote assets require a held state lock: {names}"
            raise AssetError(msg)

        for asset in selected:
            dest = self.root / asset.path
            if write_atomic(dest, asset.content):
                logger.debug("Wrote %s", dest)
            if asset.remote and remote is not None:
                remote.put(asset.path, asset.content)
        return [asset.path for asset in selected]
