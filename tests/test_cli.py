from pathlib import Path

from click.testing import CliRunner

from kiln import __version__
from kiln.cli import cli


def create_project(tmp_path: Path) -> Path:
    project = tmp_path / "site"
    (project / "content").mkdir(parents=True)
    (project / "templates").mkdir()
    (project / "kiln.yaml").write_text("site:\n  title: CLI\n", encoding="utf-8")
    (project / "templates" / "page.html.jinja").write_text(
        "<h1>{{ page.title }}</h1>{{ content }}", encoding="utf-8"
    )
    (project / "content" / "index.md").write_text("Home\n", encoding="utf-8")
    (project / "content" / "about.md").write_text("About\n", encoding="utf-8")
    (project / "content" / "wip.md").write_text("---\ndraft: true\n---\n", encoding="utf-8")
    return project


def test_cli_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert f"kiln, version {__version__}" in result.output


def test_cli_build_reports_summary(tmp_path):
    project = create_project(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["build", "--project", str(project)])

    assert result.exit_code == 0, result.output
    assert "Built 2 pages into public (2 written, 0 unchanged, 0 pruned)" in result.output
    assert (project / "public" / "about" / "index.html").exists()
    assert not (project / "public" / "wip" / "index.html").exists()

    result = runner.invoke(cli, ["build", "--project", str(project)])
    assert "(0 written, 2 unchanged, 0 pruned)" in result.output


def test_cli_build_with_drafts(tmp_path):
    project = create_project(tmp_path)

    result = CliRunner().invoke(cli, ["build", "--drafts", "--project", str(project)])

    assert result.exit_code == 0, result.output
    assert (project / "public" / "wip" / "index.html").exists()


def test_cli_verbose_lists_pruned_files(tmp_path):
    project = create_project(tmp_path)
    runner = CliRunner()
    runner.invoke(cli, ["build", "--project", str(project)])
    (project / "content" / "about.md").unlink()

    result = runner.invoke(cli, ["build", "-v", "--project", str(project)])

    assert result.exit_code == 0, result.output
    assert result.output.count("Pruned about/index.html") == 1
    assert "1 pruned" in result.output


def test_cli_clean_build(tmp_path):
    project = create_project(tmp_path)
    (project / "public").mkdir()
    (project / "public" / "old.html").write_text("old", encoding="utf-8")

    result = CliRunner().invoke(cli, ["build", "--clean", "--project", str(project)])

    assert result.exit_code == 0, result.output
    assert not (project / "public" / "old.html").exists()


def test_cli_build_failure_exits_with_error(tmp_path):
    project = create_project(tmp_path)
    (project / "content" / "about").mkdir()
    (project / "content" / "about" / "index.md").write_text("Again\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["build", "--project", str(project)])

    assert result.exit_code == 1
    assert "Build failed:" in result.output
    assert "duplicate output destination 'about/index.html'" in result.output
    assert not (project / "public").exists()


def test_cli_invalid_config_exits_with_error(tmp_path):
    project = create_project(tmp_path)
    (project / "kiln.yaml").write_text("page_size: 0\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["build", "--project", str(project)])

    assert result.exit_code == 1
    assert "Invalid configuration: page_size must be at least 1" in result.output


def test_cli_cache_clear(tmp_path):
    project = create_project(tmp_path)
    runner = CliRunner()
    runner.invoke(cli, ["build", "--project", str(project)])
    images = project / "tmp" / "cache" / "images"
    images.mkdir(parents=True)
    (images / "abc.jpg").write_bytes(b"x")

    result = runner.invoke(cli, ["cache", "clear", "--no-images", "--project", str(project)])
    assert result.exit_code == 0, result.output
    assert "Removed tmp/cache/build-manifest.json" in result.output
    assert images.exists()

    result = runner.invoke(cli, ["cache", "clear", "--project", str(project)])
    assert "Removed tmp/cache/images" in result.output
    assert not images.exists()

    result = runner.invoke(cli, ["cache", "clear", "--project", str(project)])
    assert "Cache already empty" in result.output


def test_cli_unknown_highlight_theme_is_a_config_error(tmp_path):
    project = create_project(tmp_path)
    (project / "kiln.yaml").write_text("markup:\n  highlight:\n    theme: nope\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["build", "--project", str(project)])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Invalid configuration: Unknown highlight theme 'nope'" in result.output
