"""Miner archive installation.

Downloads a release archive into the target's working directory (once),
extracts it into a freshly wiped ``extract/`` directory and locates the
expected binary by exact file name.

The archive cache is keyed by file path only: an existing non-empty archive
is reused without any integrity check.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
from pathlib import Path

import aiohttp

from .config import MinerTarget
from .errors import BinaryNotFoundError, DownloadError, InstallError

__all__ = [
    "Installer",
    "extract_clean",
    "find_executable",
    "list_files",
]

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
EXTRACT_DIRNAME = "extract"
LISTING_MAX_DEPTH = 4

# sock_read guards against a stalled mirror; total is unbounded for big archives
DOWNLOAD_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=60)


def _check_members(tar: tarfile.TarFile, dest: Path) -> None:
    """Reject members that would land outside ``dest``."""
    root = dest.resolve()
    for member in tar.getmembers():
        target = (root / member.name).resolve()
        if target != root and not target.is_relative_to(root):
            raise InstallError(f"Archive member escapes extraction dir: {member.name}")


def extract_clean(archive: Path, dest: Path) -> Path:
    """Extract ``archive`` into ``dest/extract``, wiping any previous content.

    Args:
        archive: Path to the tarball (any compression tarfile understands)
        dest: Target working directory

    Returns:
        The extraction directory

    Raises:
        InstallError: If the old extraction cannot be removed, or the
            archive is unreadable or malformed
    """
    extract_dir = dest / EXTRACT_DIRNAME
    try:
        if extract_dir.exists():
            shutil.rmtree(extract_dir)
        extract_dir.mkdir(parents=True)
    except OSError as e:
        raise InstallError(f"Cannot prepare {extract_dir}: {e}") from e

    logger.info(f"Extract: {archive} -> {extract_dir}")
    try:
        with tarfile.open(archive, "r:*") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(extract_dir, filter="data")
            else:
                _check_members(tar, extract_dir)
                tar.extractall(extract_dir)
    except (tarfile.TarError, OSError) as e:
        raise InstallError(f"Failed to extract {archive}: {e}") from e

    return extract_dir


def list_files(root: Path, max_depth: int = LISTING_MAX_DEPTH) -> list[Path]:
    """List regular files under ``root`` up to ``max_depth`` levels deep."""
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_depth = len(Path(dirpath).relative_to(root).parts)
        if rel_depth + 1 >= max_depth:
            # files in this directory are still listed, deeper ones are not
            dirnames[:] = []
        for name in filenames:
            path = Path(dirpath) / name
            if path.is_file() and not path.is_symlink():
                files.append(path)
    return sorted(files)


def find_executable(root: Path, name: str) -> Path | None:
    """Find the first regular file named exactly ``name`` and mark it executable.

    Shallower matches win; ties are broken by path order so the result is
    deterministic across runs.
    """
    candidates = [
        path
        for path in root.rglob(name)
        if path.name == name and path.is_file() and not path.is_symlink()
    ]
    if not candidates:
        return None

    binary = min(candidates, key=lambda p: (len(p.relative_to(root).parts), str(p)))
    mode = binary.stat().st_mode
    binary.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return binary


class Installer:
    """Installs miner targets into their working directories.

    Example:
        installer = Installer()
        try:
            gpu_bin = await installer.install(config.gpu, config.target_dir(config.gpu))
        finally:
            await installer.close()
    """

    def __init__(self, session: aiohttp.ClientSession | None = None) -> None:
        """Initialize installer.

        Args:
            session: Optional HTTP session (one is created lazily otherwise)
        """
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=DOWNLOAD_TIMEOUT)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this installer created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def download_if_needed(self, url: str, archive: Path) -> bool:
        """Download ``url`` to ``archive`` unless a non-empty file is already there.

        The body is streamed to ``<archive>.part`` and renamed into place on
        success, so an interrupted download is never mistaken for a cached one.

        Returns:
            True if a download happened, False if the cached archive was reused

        Raises:
            DownloadError: On HTTP error status, network failure, empty body
                or a local write failure
        """
        if archive.is_file() and archive.stat().st_size > 0:
            logger.info(f"Archive already exists: {archive}")
            return False

        partial = archive.with_name(archive.name + ".part")
        logger.info(f"Download: {url}")

        session = await self._get_session()
        try:
            archive.parent.mkdir(parents=True, exist_ok=True)
            async with session.get(url) as resp:
                if resp.status >= 400:
                    raise DownloadError(url, resp.reason or "HTTP error", resp.status)

                total = resp.content_length
                received = 0
                next_report = 0.25
                with open(partial, "wb") as fh:
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        fh.write(chunk)
                        received += len(chunk)
                        if total and received / total >= next_report:
                            logger.info(
                                f"Download progress {archive.name}: "
                                f"{received * 100 // total}% ({received}/{total} bytes)"
                            )
                            next_report += 0.25

            if received == 0:
                raise DownloadError(url, "Empty response body", resp.status)

            partial.replace(archive)
            logger.info(f"Downloaded {received} bytes to {archive}")
            return True

        except aiohttp.ClientError as e:
            raise DownloadError(url, f"Network error: {e}") from e
        except OSError as e:
            raise DownloadError(url, f"Cannot write {partial}: {e}") from e
        finally:
            if partial.is_file():
                partial.unlink()

    async def install(self, target: MinerTarget, target_dir: Path) -> Path:
        """Download, extract and locate the binary for one miner target.

        Args:
            target: Miner description
            target_dir: Working directory for this target

        Returns:
            Absolute path of the executable

        Raises:
            InstallError: If any step fails
            BinaryNotFoundError: If the archive does not contain the binary
        """
        target_dir.mkdir(parents=True, exist_ok=True)
        archive = target_dir / target.archive_name

        await self.download_if_needed(target.url, archive)
        extract_dir = extract_clean(archive, target_dir)

        binary = find_executable(extract_dir, target.binary_name)
        if binary is None:
            raise BinaryNotFoundError(
                target.binary_name, extract_dir, list_files(extract_dir)
            )

        binary = binary.resolve()
        logger.info(f"{target.tag} bin: {binary}")
        return binary
