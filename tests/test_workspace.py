from __future__ import annotations

import json
import shutil
import sys
from pathlib import Path

import pytest

from devteam_graph.workspace import LocalWorkspace, folder_structure_dirs

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")

DEPENDENCIES = {
    "backend": {"name": "todo-api", "dependencies": {"express": "^4.18.2"}, "dev_dependencies": {"nodemon": "^3.0.0"}},
    "frontend": {"name": "todo-web", "dependencies": {"react": "^18.2.0"}},
}
TREE = """\
todo/
├── backend/
│   ├── src/
│   │   ├── services/   # business logic
│   │   └── index.js
├── frontend/
│   └── src/
│       └── layouts/
└── README.md
"""


def test_folder_structure_dirs_keeps_directory_entries() -> None:
    assert folder_structure_dirs(TREE) == ["todo", "backend", "src", "services", "frontend", "layouts"]


def test_create_scaffolds_backend_and_frontend(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path)
    workspace_id = workspace.create(TREE, DEPENDENCIES)
    root = workspace.path_for(workspace_id)

    backend_manifest = json.loads((root / "backend" / "package.json").read_text(encoding="utf-8"))
    assert backend_manifest["name"] == "todo-api"
    assert backend_manifest["dependencies"] == {"express": "^4.18.2"}
    assert backend_manifest["devDependencies"] == {"nodemon": "^3.0.0"}
    assert backend_manifest["main"] == "src/index.js"
    frontend_manifest = json.loads((root / "frontend" / "package.json").read_text(encoding="utf-8"))
    assert frontend_manifest["scripts"]["build"] == "vite build"
    assert (root / "backend" / "src" / "routes").is_dir()
    assert (root / "frontend" / "src" / "pages").is_dir()
    assert (root / "services").is_dir()

    files = workspace.list_files(workspace_id)
    assert "backend/package.json" in files
    assert "frontend/.env.example" in files
    assert not any(path.startswith(".git/") for path in files)


@requires_git
def test_fresh_workspace_is_healthy(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path)
    workspace_id = workspace.create("", DEPENDENCIES)
    report = workspace.health_check(workspace_id)
    assert report.healthy, report.failures
    assert report.path == str(tmp_path / workspace_id)


def test_health_check_reports_each_failure(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path)
    workspace_id = workspace.create("", {"backend": DEPENDENCIES["backend"]})
    shutil.rmtree(workspace.path_for(workspace_id) / "backend" / "src" / "routes")

    report = workspace.health_check(workspace_id)

    assert not report.healthy
    assert "Frontend package.json missing" in report.failures
    assert "Missing directory: backend/src/routes" in report.failures
    assert workspace.health_check("workspace-unknown").failures == ["Workspace not found"]


def test_files_round_trip_and_paths_stay_inside(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path)
    workspace_id = workspace.create("", DEPENDENCIES)

    workspace.write_file(workspace_id, "/backend/src/models/User.js", "export default {};\n")
    assert workspace.read_file(workspace_id, "backend/src/models/User.js") == "export default {};\n"
    assert workspace.read_file(workspace_id, "backend/src/missing.js") is None
    with pytest.raises(ValueError):
        workspace.write_file(workspace_id, "../escape.txt", "nope")
    with pytest.raises(ValueError):
        workspace.read_file(workspace_id, "backend/../../outside.txt")
    with pytest.raises(ValueError):
        workspace.path_for("../other")
    assert not (tmp_path / "escape.txt").exists()


def test_execute_reports_exit_codes(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path)
    workspace_id = workspace.create("", DEPENDENCIES)

    ok = workspace.execute(workspace_id, [sys.executable, "-c", "print('hello')"])
    assert ok.ok
    assert ok.stdout.strip() == "hello"

    failed = workspace.execute(workspace_id, [sys.executable, "-c", "import sys; sys.exit(3)"])
    assert failed.exit_code == 3

    missing = workspace.execute(workspace_id, "definitely-not-a-command --flag")
    assert missing.exit_code == 127


@requires_git
def test_snapshot_and_rollback(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path)
    workspace_id = workspace.create("", DEPENDENCIES)

    workspace.write_file(workspace_id, "backend/src/index.js", "v1\n")
    first = workspace.snapshot(workspace_id, "First version")
    workspace.write_file(workspace_id, "backend/src/index.js", "v2\n")
    second = workspace.snapshot(workspace_id, "Second version")

    assert first.success and first.tag == "v0.1.0"
    assert second.success and second.tag == "v0.2.0"

    rolled = workspace.rollback(workspace_id, first.tag)
    assert rolled.success
    assert workspace.read_file(workspace_id, "backend/src/index.js") == "v1\n"

    assert not workspace.rollback(workspace_id, "v9.9.9").success


def test_destroy_removes_the_workspace(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path)
    workspace_id = workspace.create("", DEPENDENCIES)
    workspace.destroy(workspace_id)
    assert not workspace.path_for(workspace_id).exists()
    workspace.destroy(workspace_id)
