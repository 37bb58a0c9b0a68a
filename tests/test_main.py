"""Tests for component wiring in techne.main."""

from __future__ import annotations

import pytest

from techne.main import create_components, shutdown_components
from techne.storage.files import InMemoryFileStore
from techne.storage.fingerprints import InMemoryFingerprintStore


@pytest.mark.asyncio
async def test_create_and_shutdown_components(settings, tmp_path):
    (tmp_path / "src" / "components" / "ui").mkdir(parents=True)
    (tmp_path / "src" / "components" / "ui" / "button.tsx").write_text("export {};\n")
    (tmp_path / "package.json").write_text("{}\n")

    components = await create_components(
        settings.model_copy(update={"file_backend": "memory", "template_dir": str(tmp_path)})
    )
    try:
        assert isinstance(components["file_store"], InMemoryFileStore)
        assert isinstance(components["fingerprint_store"], InMemoryFingerprintStore)
        assert components["database"] is None
        assert components["templates"].component_names() == ["button"]
        assert set(components["dispatcher"].names) == {
            "write_file",
            "line_replace",
            "read_file",
            "delete_file",
            "rename_file",
            "search_files",
            "load_component",
            "web_search",
            "web_fetch",
            "add_dependency",
            "remove_dependency",
            "generate_image",
            "edit_image",
            "read_console_logs",
            "read_network_requests",
            "read_project_analytics",
        }
        assert components["bus"] is not None
    finally:
        await shutdown_components(components)

    assert components["transport"]._http is None
    assert components["tools_http"].is_closed
