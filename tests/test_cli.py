from __future__ import annotations

from typer.testing import CliRunner

from catalogsync.cli import app

runner = CliRunner()


def _invoke(tmp_path, *args: str):
    return runner.invoke(
        app,
        ["--db", str(tmp_path / "catalog.sqlite3"), "--config", str(tmp_path / "none.toml"), *args],
    )


def _text(result) -> str:
    return " ".join(result.stdout.split())


def _created_id(result) -> str:
    assert result.exit_code == 0, result.output
    return result.stdout.split()[-1]


def test_end_to_end_folder_and_tag_workflow(tmp_path) -> None:
    project_id = _created_id(_invoke(tmp_path, "project", "create", "Alpha"))
    folder_id = _created_id(
        _invoke(tmp_path, "folder", "create", "Reports", "--project", project_id)
    )
    _created_id(
        _invoke(
            tmp_path,
            "file",
            "add",
            "report.pdf",
            "--project",
            project_id,
            "--folder",
            folder_id,
            "--tag",
            "Draft",
        )
    )

    listed = _invoke(tmp_path, "file", "list", "--project", project_id, "--folder", folder_id)
    assert listed.exit_code == 0, listed.output
    assert "Page 1/1 total=1" in _text(listed)

    renamed = _invoke(tmp_path, "tag", "rename", "Draft", "Final")
    assert renamed.exit_code == 0, renamed.output
    assert "Tag rename Draft -> Final: 1 files updated" in _text(renamed)

    deleted = _invoke(tmp_path, "folder", "delete", folder_id, "--project", project_id)
    assert deleted.exit_code == 0, deleted.output
    assert "1 files and 0 folders moved to project root" in _text(deleted)

    root_files = _invoke(tmp_path, "file", "list", "--project", project_id)
    assert "total=1" in _text(root_files)


def test_workspace_create_and_stats(tmp_path) -> None:
    created = _invoke(tmp_path, "workspace", "create", "Clients")
    assert created.exit_code == 0, created.output
    assert "Created workspace Clients" in _text(created)

    stats = _invoke(tmp_path, "workspace", "stats")
    assert stats.exit_code == 0, stats.output
    assert "Files" in stats.stdout


def test_rejected_move_exits_with_error(tmp_path) -> None:
    project_id = _created_id(_invoke(tmp_path, "project", "create", "Alpha"))
    parent_id = _created_id(_invoke(tmp_path, "folder", "create", "A", "--project", project_id))
    child_id = _created_id(
        _invoke(tmp_path, "folder", "create", "B", "--project", project_id, "--parent", parent_id)
    )

    result = _invoke(tmp_path, "folder", "move", parent_id, "--project", project_id, "--parent", child_id)

    assert result.exit_code == 1
    assert "Error:" in result.stdout


def test_folder_scope_without_project_is_an_error(tmp_path) -> None:
    result = _invoke(tmp_path, "file", "list", "--folder", "abc")

    assert result.exit_code == 1
    assert "folder scope requires a project" in _text(result)


def test_invalid_settings_exit_with_code_2(tmp_path) -> None:
    config = tmp_path / "bad.toml"
    config.write_text("[catalog]\npage_size = 0\n", encoding="utf-8")

    result = runner.invoke(
        app, ["--db", str(tmp_path / "catalog.sqlite3"), "--config", str(config), "workspace", "list"]
    )

    assert result.exit_code == 2
