"""
On-disk store of installed plugins.

Layout, one folder per sanitized plugin id::

    <plugins_dir>/<safe_id>/artifact.tgz    the archive as installed
    <plugins_dir>/<safe_id>/dist/           extracted plugin code
    <plugins_dir>/<safe_id>/metadata.json   PluginMetadata
    <plugins_dir>/<safe_id>/context.json    PluginContext (capability grant)

The registry is the only writer of these files. Its methods do blocking
file I/O; async callers go through PluginManager, which runs them in a
worker thread.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from typing import Any

from pydantic import ValidationError

from saltshaker.plugins.errors import PluginInstallError, PluginNotInstalledError
from saltshaker.plugins.models import (
    InstallRequest,
    PluginContext,
    PluginMetadata,
    sanitize_id,
)

logger = logging.getLogger(__name__)


ARTIFACT_FILE = "artifact.tgz"
DIST_DIR = "dist"
METADATA_FILE = "metadata.json"
CONTEXT_FILE = "context.json"

# Tried in order before falling back to the first .py file in dist/
ENTRY_CANDIDATES = ("plugin.py", "index.py", "main.py")


class PluginRegistry:
    """Installs, lists and removes plugins under one directory.

    Attributes:
        _plugins_dir: Root of the store.
        _contexts: In-memory cache of capability grants.
    """

    def __init__(self, plugins_dir: str | Path) -> None:
        self._plugins_dir = Path(plugins_dir)
        self._contexts: dict[str, PluginContext] = {}

    @property
    def plugins_dir(self) -> Path:
        return self._plugins_dir

    def plugin_dir(self, plugin_id: str) -> Path:
        return self._plugins_dir / sanitize_id(plugin_id)

    # ------------------------------------------------------------------
    # Install / uninstall
    # ------------------------------------------------------------------

    def install(self, request: InstallRequest) -> PluginMetadata:
        """Verify, extract and record a plugin archive.

        A reinstall replaces the previous installation entirely. Extraction
        happens in a staging folder, so a failed install leaves any previous
        installation untouched.

        Raises:
            PluginInstallError: On hash mismatch, an unreadable or unsafe
                archive, when no entry point can be found, or when the
                sanitized folder already belongs to a different plugin id.
        """
        digest = hashlib.sha256(request.archive_bytes).hexdigest()
        if request.content_hash and request.content_hash.lower() != digest:
            raise PluginInstallError(
                f"Archive hash mismatch for {request.id}: expected {request.content_hash}, got {digest}",
                plugin_id=request.id,
            )

        self._plugins_dir.mkdir(parents=True, exist_ok=True)
        target = self.plugin_dir(request.id)
        owner = self._folder_owner(target)
        if owner is not None and owner != request.id:
            raise PluginInstallError(
                f"Cannot install {request.id}: its folder {target.name} belongs to plugin {owner}",
                plugin_id=request.id,
            )
        staging = self._plugins_dir / f".{target.name}.staging"
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir()

        try:
            (staging / ARTIFACT_FILE).write_bytes(request.archive_bytes)
            _extract_stripped(request.id, request.archive_bytes, staging)
            entry = _find_entry(request.id, staging / DIST_DIR)

            metadata = PluginMetadata(
                id=request.id,
                name=request.name,
                version=request.version,
                content_hash=digest,
                entry=entry,
            )
            context = PluginContext(
                plugin_id=request.id,
                permissions=set(request.permissions),
                resources=dict(request.resources),
            )
            _write_json(staging / METADATA_FILE, metadata.model_dump(mode="json"))
            _write_json(staging / CONTEXT_FILE, _context_document(context))

            if target.exists():
                shutil.rmtree(target)
            staging.replace(target)
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        self._contexts[request.id] = context
        logger.info("Plugin %s %s installed at %s", request.id, request.version, target)
        return metadata

    def uninstall(self, plugin_id: str) -> bool:
        """Remove a plugin's folder and cached grant.

        Returns:
            True if a folder was removed.
        """
        self._contexts.pop(plugin_id, None)
        folder = self.plugin_dir(plugin_id)
        if not folder.is_dir():
            return False
        owner = self._folder_owner(folder)
        if owner is not None and owner != plugin_id:
            logger.warning("Not uninstalling %s: folder %s belongs to plugin %s", plugin_id, folder.name, owner)
            return False
        shutil.rmtree(folder)
        logger.info("Plugin %s uninstalled", plugin_id)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_metadata(self, plugin_id: str) -> PluginMetadata | None:
        """Stored metadata, or None unless it was recorded for this exact id."""
        metadata = _load_metadata(self.plugin_dir(plugin_id) / METADATA_FILE)
        if metadata is not None and metadata.id != plugin_id:
            logger.warning("Metadata in folder of plugin %s names %s; ignoring it", plugin_id, metadata.id)
            return None
        return metadata

    def _folder_owner(self, folder: Path) -> str | None:
        # Distinct ids can share a folder once sanitized (a.b and a_b)
        metadata = _load_metadata(folder / METADATA_FILE)
        return metadata.id if metadata is not None else None

    def list_installed(self) -> list[PluginMetadata]:
        """Metadata of every valid installation; partial folders are skipped."""
        if not self._plugins_dir.is_dir():
            return []

        plugins: list[PluginMetadata] = []
        for folder in sorted(self._plugins_dir.iterdir()):
            if not folder.is_dir() or folder.name.startswith("."):
                continue
            metadata = _load_metadata(folder / METADATA_FILE)
            if metadata is None:
                logger.debug("Skipping invalid plugin folder %s", folder.name)
                continue
            plugins.append(metadata)
        return plugins

    def load_entry(self, plugin_id: str) -> tuple[PluginMetadata, str]:
        """Metadata and entry-point source of an installed plugin.

        Raises:
            PluginNotInstalledError: If metadata or entry file is missing.
        """
        metadata = self.get_metadata(plugin_id)
        if metadata is None:
            raise PluginNotInstalledError(f"Plugin {plugin_id} is not installed", plugin_id=plugin_id)

        entry_path = self.plugin_dir(plugin_id) / DIST_DIR / metadata.entry
        try:
            source = entry_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PluginNotInstalledError(
                f"Entry point of plugin {plugin_id} is unreadable: {e}", plugin_id=plugin_id
            ) from e
        return metadata, source

    def get_context(self, plugin_id: str) -> PluginContext | None:
        """Capability grant of a plugin, from cache or ``context.json``."""
        cached = self._contexts.get(plugin_id)
        if cached is not None:
            return cached

        path = self.plugin_dir(plugin_id) / CONTEXT_FILE
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            context = PluginContext.model_validate(raw)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable context for plugin %s: %s", plugin_id, e)
            return None

        if context.plugin_id != plugin_id:
            logger.warning("Context of plugin %s names %s; ignoring it", plugin_id, context.plugin_id)
            return None

        self._contexts[plugin_id] = context
        return context

    def clear_cache(self) -> None:
        self._contexts.clear()

    def __repr__(self) -> str:
        return f"<PluginRegistry dir={self._plugins_dir} cached={len(self._contexts)}>"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_metadata(path: Path) -> PluginMetadata | None:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return PluginMetadata.model_validate(raw)
    except (OSError, ValueError, ValidationError):
        return None


def _context_document(context: PluginContext) -> dict[str, Any]:
    data = context.model_dump(mode="json")
    data["permissions"] = sorted(context.permissions)
    return data


def _write_json(path: Path, data: dict[str, Any]) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    tmp.replace(path)


def _extract_stripped(plugin_id: str, archive: bytes, dest: Path) -> None:
    """Extract a .tgz into ``dest`` with its first path component removed.

    Only regular files and directories are extracted. Absolute paths,
    ``..`` components and links are rejected.
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:*") as tar:
            for member in tar.getmembers():
                parts = PurePosixPath(member.name).parts
                if member.name.startswith("/") or ".." in parts:
                    raise PluginInstallError(
                        f"Archive of {plugin_id} contains unsafe path {member.name!r}", plugin_id=plugin_id
                    )
                if member.issym() or member.islnk():
                    raise PluginInstallError(
                        f"Archive of {plugin_id} contains link {member.name!r}", plugin_id=plugin_id
                    )

                stripped = parts[1:]
                if not stripped:
                    continue
                target = dest.joinpath(*stripped)

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                elif member.isfile():
                    target.parent.mkdir(parents=True, exist_ok=True)
                    source = tar.extractfile(member)
                    if source is None:
                        continue
                    with source, target.open("wb") as out:
                        shutil.copyfileobj(source, out)
                else:
                    logger.debug("Skipping special archive member %s", member.name)
    except tarfile.TarError as e:
        raise PluginInstallError(f"Archive of {plugin_id} is not a valid tarball: {e}", plugin_id=plugin_id) from e


def _find_entry(plugin_id: str, dist: Path) -> str:
    if not dist.is_dir():
        raise PluginInstallError(f"Archive of {plugin_id} has no {DIST_DIR}/ folder", plugin_id=plugin_id)

    for name in ENTRY_CANDIDATES:
        if (dist / name).is_file():
            return name

    for path in sorted(dist.iterdir()):
        if path.is_file() and path.suffix == ".py":
            return path.name

    raise PluginInstallError(f"No Python entry point found in {DIST_DIR}/ of {plugin_id}", plugin_id=plugin_id)
