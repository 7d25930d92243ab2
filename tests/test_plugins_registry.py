"""Tests for saltshaker.plugins.registry."""

from __future__ import annotations

import hashlib
import io
import json
import tarfile

import pytest

from conftest import make_archive
from saltshaker.plugins.errors import PluginInstallError, PluginNotInstalledError
from saltshaker.plugins.models import InstallRequest, PluginResource, sanitize_id
from saltshaker.plugins.registry import (
    ARTIFACT_FILE,
    CONTEXT_FILE,
    METADATA_FILE,
    PluginRegistry,
)

PLUGIN_SOURCE = "def on_init(api):\n    pass\n"


def _request(plugin_id: str = "overlay", files: dict[str, str] | None = None, **kwargs) -> InstallRequest:
    archive = make_archive(files if files is not None else {"dist/plugin.py": PLUGIN_SOURCE})
    kwargs.setdefault("version", "1.0.0")
    return InstallRequest(
        id=plugin_id,
        name=kwargs.pop("name", plugin_id.title()),
        archive_bytes=kwargs.pop("archive_bytes", archive),
        **kwargs,
    )


@pytest.fixture
def registry(tmp_path):
    return PluginRegistry(tmp_path / "plugins")


# ===========================================================================
# Install
# ===========================================================================

class TestInstall:
    """Tests for PluginRegistry.install."""

    def test_install_layout(self, registry):
        request = _request(
            permissions={"file.read"},
            resources={"prefs": PluginResource(id="prefs", type="json", path="{home}/prefs.json")},
        )
        metadata = registry.install(request)

        folder = registry.plugin_dir("overlay")
        assert (folder / ARTIFACT_FILE).read_bytes() == request.archive_bytes
        assert (folder / "dist" / "plugin.py").read_text() == PLUGIN_SOURCE
        assert metadata.entry == "plugin.py"
        assert metadata.content_hash == hashlib.sha256(request.archive_bytes).hexdigest()

        stored = json.loads((folder / METADATA_FILE).read_text())
        assert stored["id"] == "overlay"
        assert stored["version"] == "1.0.0"

        context = json.loads((folder / CONTEXT_FILE).read_text())
        assert context["plugin_id"] == "overlay"
        assert context["permissions"] == ["file.read"]
        assert context["resources"]["prefs"]["type"] == "json"

    def test_hash_verified(self, registry):
        archive = make_archive({"dist/plugin.py": PLUGIN_SOURCE})
        digest = hashlib.sha256(archive).hexdigest()

        metadata = registry.install(_request(archive_bytes=archive, content_hash=digest.upper()))
        assert metadata.content_hash == digest

    def test_hash_mismatch(self, registry):
        with pytest.raises(PluginInstallError, match="hash mismatch"):
            registry.install(_request(content_hash="0" * 64))
        assert not registry.plugin_dir("overlay").exists()

    def test_folder_name_is_sanitized(self, registry):
        registry.install(_request("my plugin/v1"))
        assert registry.plugin_dir("my plugin/v1").name == "my_plugin_v1"
        assert sanitize_id("a.b:c") == "a_b_c"
        assert registry.get_metadata("my plugin/v1").id == "my plugin/v1"

    def test_colliding_id_cannot_take_over_folder(self, registry):
        secret = {"secret": PluginResource(id="secret", type="text", path="{home}/secret.txt")}
        registry.install(_request("a.b", permissions={"file.read"}, resources=secret))

        with pytest.raises(PluginInstallError, match="belongs to plugin a.b"):
            registry.install(_request("a_b", files={"dist/plugin.py": "def on_init(api):\n    pass\n# other\n"}))

        assert registry.get_metadata("a.b").id == "a.b"
        assert registry.get_metadata("a_b") is None
        assert registry.get_context("a.b").permissions == {"file.read"}
        assert registry.get_context("a_b") is None
        with pytest.raises(PluginNotInstalledError):
            registry.load_entry("a_b")

    def test_reinstall_replaces(self, registry):
        registry.install(_request(files={"dist/plugin.py": PLUGIN_SOURCE, "dist/old.txt": "x"}))
        registry.install(_request(files={"dist/plugin.py": PLUGIN_SOURCE}, version="2.0.0"))

        folder = registry.plugin_dir("overlay")
        assert not (folder / "dist" / "old.txt").exists()
        assert registry.get_metadata("overlay").version == "2.0.0"

    def test_failed_reinstall_keeps_previous(self, registry):
        registry.install(_request())
        with pytest.raises(PluginInstallError):
            registry.install(_request(files={"README.md": "no code"}, version="2.0.0"))

        assert registry.get_metadata("overlay").version == "1.0.0"
        leftovers = [p.name for p in registry.plugins_dir.iterdir() if p.name.startswith(".")]
        assert leftovers == []

    def test_first_component_is_stripped(self, registry):
        registry.install(_request(files={"dist/plugin.py": PLUGIN_SOURCE}))
        folder = registry.plugin_dir("overlay")
        assert not (folder / "package").exists()

    def test_parent_traversal_rejected(self, registry, tmp_path):
        with pytest.raises(PluginInstallError, match="unsafe path"):
            registry.install(_request(files={"../../evil.py": "x", "dist/plugin.py": PLUGIN_SOURCE}))
        assert not (tmp_path / "evil.py").exists()

    def test_link_rejected(self, registry):
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            link = tarfile.TarInfo("package/dist/plugin.py")
            link.type = tarfile.SYMTYPE
            link.linkname = "/etc/passwd"
            tar.addfile(link)

        with pytest.raises(PluginInstallError, match="link"):
            registry.install(_request(archive_bytes=buf.getvalue()))

    def test_invalid_archive(self, registry):
        with pytest.raises(PluginInstallError, match="not a valid tarball"):
            registry.install(_request(archive_bytes=b"definitely not gzip"))

    def test_entry_candidates_preferred(self, registry):
        metadata = registry.install(_request(files={
            "dist/aaa.py": "x = 1\n",
            "dist/index.py": PLUGIN_SOURCE,
        }))
        assert metadata.entry == "index.py"

    def test_entry_falls_back_to_first_python_file(self, registry):
        metadata = registry.install(_request(files={
            "dist/zeta.py": PLUGIN_SOURCE,
            "dist/alpha.py": PLUGIN_SOURCE,
            "dist/notes.txt": "",
        }))
        assert metadata.entry == "alpha.py"

    def test_no_python_entry(self, registry):
        with pytest.raises(PluginInstallError, match="No Python entry point"):
            registry.install(_request(files={"dist/readme.txt": "hi"}))

    def test_resources_accept_a_list(self):
        request = InstallRequest(
            id="p", name="P", version="1", archive_bytes=b"",
            resources=[{"id": "prefs", "type": "json", "path": "{home}/p.json"}],
        )
        assert request.resources["prefs"].path == "{home}/p.json"


# ===========================================================================
# Reads
# ===========================================================================

class TestReads:
    """Tests for metadata, entry and context lookups."""

    def test_list_installed(self, registry):
        registry.install(_request("beta"))
        registry.install(_request("alpha"))
        (registry.plugins_dir / "partial").mkdir()
        (registry.plugins_dir / ".hidden").mkdir()

        assert [m.id for m in registry.list_installed()] == ["alpha", "beta"]

    def test_list_installed_without_directory(self, registry):
        assert registry.list_installed() == []

    def test_load_entry(self, registry):
        registry.install(_request())
        metadata, source = registry.load_entry("overlay")
        assert metadata.id == "overlay"
        assert source == PLUGIN_SOURCE

    def test_load_entry_not_installed(self, registry):
        with pytest.raises(PluginNotInstalledError):
            registry.load_entry("ghost")

    def test_load_entry_missing_file(self, registry):
        registry.install(_request())
        (registry.plugin_dir("overlay") / "dist" / "plugin.py").unlink()
        with pytest.raises(PluginNotInstalledError, match="unreadable"):
            registry.load_entry("overlay")

    def test_get_context_from_disk(self, registry, tmp_path):
        registry.install(_request(permissions={"file.read"}))

        fresh = PluginRegistry(tmp_path / "plugins")
        context = fresh.get_context("overlay")
        assert context.plugin_id == "overlay"
        assert context.has_permission("file.read")

    def test_get_context_unknown(self, registry):
        assert registry.get_context("ghost") is None

    def test_get_context_rejects_mismatched_id(self, registry):
        registry.install(_request())
        registry.clear_cache()
        path = registry.plugin_dir("overlay") / CONTEXT_FILE
        data = json.loads(path.read_text())
        data["plugin_id"] = "someone-else"
        path.write_text(json.dumps(data))

        assert registry.get_context("overlay") is None

    def test_get_context_corrupt_file(self, registry):
        registry.install(_request())
        registry.clear_cache()
        (registry.plugin_dir("overlay") / CONTEXT_FILE).write_text("{oops")

        assert registry.get_context("overlay") is None


# ===========================================================================
# Uninstall
# ===========================================================================

class TestUninstall:
    """Tests for PluginRegistry.uninstall."""

    def test_uninstall(self, registry):
        registry.install(_request())
        assert registry.uninstall("overlay") is True
        assert not registry.plugin_dir("overlay").exists()
        assert registry.get_context("overlay") is None
        assert registry.get_metadata("overlay") is None

    def test_uninstall_missing(self, registry):
        assert registry.uninstall("ghost") is False

    def test_uninstall_leaves_folder_of_colliding_id(self, registry):
        registry.install(_request("a.b"))
        assert registry.uninstall("a_b") is False
        assert registry.get_metadata("a.b") is not None
