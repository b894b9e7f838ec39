"""
Tests for CLI module.
"""

import json
from pathlib import Path

import pytest
from sqlalchemy import create_engine, insert

from gist_migrator.cli import build_parser, main, settings_from_args
from gist_migrator.models import SourceKind
from gist_migrator.opengist_source import gists_table, opengist_metadata, users_table
from gist_migrator.store import SqlAlchemyStore


@pytest.fixture
def opengist(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[str, Path]:
    """An OpenGist database with one user and one public gist, plus its repository directory."""
    monkeypatch.chdir(tmp_path)
    for name in ("GIST_MIGRATOR_DATABASE_URL", "GIST_MIGRATOR_BASE_URL", "GIST_MIGRATOR_MAX_JOBS"):
        monkeypatch.delenv(name, raising=False)

    url = f"sqlite:///{tmp_path / 'opengist.db'}"
    engine = create_engine(url)
    opengist_metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(insert(users_table), [{"id": 1, "username": "alice", "email": "a@example.com", "password": ""}])
        conn.execute(insert(gists_table), [{"id": 1, "uuid": "u1", "title": "Hello", "private": 0, "user_id": 1}])
    engine.dispose()

    repos = tmp_path / "repos"
    (repos / "alice" / "u1").mkdir(parents=True)
    (repos / "alice" / "u1" / "hello.py").write_text("print('hi')\n")
    return url, repos


def _opengist_args(tmp_path: Path, source: tuple[str, Path], *extra: str) -> list[str]:
    url, repos = source
    return [
        "--database-url",
        f"sqlite:///{tmp_path / 'target.db'}",
        "opengist",
        "--source-database",
        url,
        "--repositories",
        str(repos),
        "--rate-limit-delay-ms",
        "0",
        *extra,
    ]


@pytest.mark.unit
class TestParser:
    def test_github_arguments(self) -> None:
        args = build_parser().parse_args(
            ["github", "--token", "tok", "-u", "alice", "--migrate-private", "--import-comments", "--max-items", "5"]
        )

        settings = settings_from_args(args)

        assert settings.source_kind is SourceKind.GITHUB
        assert settings.auth_token == "tok"
        assert settings.username == "alice"
        assert settings.migrate_private_items
        assert settings.import_comments
        assert settings.max_items == 5
        assert settings.effective_source_url == "https://api.github.com"

    def test_gitlab_url(self) -> None:
        args = build_parser().parse_args(["gitlab", "--url", "https://git.example.com", "--pass-token", "gl/tok"])

        settings = settings_from_args(args)

        assert settings.source_url == "https://git.example.com"
        assert settings.token_pass_path == "gl/tok"

    def test_opengist_requires_paths(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["opengist", "--source-database", "sqlite:///og.db"])

    def test_source_kind_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


@pytest.mark.unit
class TestMain:
    def test_opengist_migration(
        self, tmp_path: Path, opengist: tuple[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(_opengist_args(tmp_path, opengist))

        assert excinfo.value.code == 0
        out = capsys.readouterr().out
        assert "Users imported:    1" in out
        assert "Gists imported:    1" in out

        target = SqlAlchemyStore.from_url(f"sqlite:///{tmp_path / 'target.db'}")
        assert target.find_user_id("alice") is not None
        target.dispose()

    def test_passwords_go_to_report_file_only(
        self, tmp_path: Path, opengist: tuple[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        report = tmp_path / "report.txt"

        with pytest.raises(SystemExit) as excinfo:
            main(["--report", str(report), *_opengist_args(tmp_path, opengist, "--reset-passwords")])

        assert excinfo.value.code == 0
        assert "Generated passwords:" in report.read_text()
        assert "Generated passwords:" not in capsys.readouterr().out

    def test_dry_run_prints_json(
        self, tmp_path: Path, opengist: tuple[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(_opengist_args(tmp_path, opengist, "--dry-run"))

        assert excinfo.value.code == 0
        preview = json.loads(capsys.readouterr().out)
        assert preview["dry_run"] is True
        assert preview["summary"]["posts_to_migrate"] == 1

        target = SqlAlchemyStore.from_url(f"sqlite:///{tmp_path / 'target.db'}")
        assert target.find_user_id("alice") is None
        target.dispose()

    def test_test_connection(
        self, tmp_path: Path, opengist: tuple[str, Path], capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(_opengist_args(tmp_path, opengist, "--test-connection"))

        assert excinfo.value.code == 0
        assert "1 users, 1 gists" in capsys.readouterr().out

    def test_invalid_settings_exit_2(self, tmp_path: Path, opengist: tuple[str, Path]) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(_opengist_args(tmp_path, opengist, "--batch-size", "0"))

        assert excinfo.value.code == 2

    def test_not_an_opengist_database_exits_1(self, tmp_path: Path, opengist: tuple[str, Path]) -> None:
        empty = (f"sqlite:///{tmp_path / 'empty.db'}", opengist[1])

        with pytest.raises(SystemExit) as excinfo:
            main(_opengist_args(tmp_path, empty))

        assert excinfo.value.code == 1
