from pathlib import Path

import pytest
import yaml

from foliage.cli.main import main


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("FOLIAGE_DATABASE_URL", "FOLIAGE_STORAGE_DIR", "FOLIAGE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "database_url": f"sqlite+aiosqlite:///{tmp_path / 'fs.db'}",
                "storage_dir": str(tmp_path / "storage"),
                "object_store": {"presign_secret": "secret"},
            }
        )
    )
    return path


def run_cli(*args: str) -> None:
    main(list(args))


def test_no_command(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        run_cli()
    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert "init-db" in out
    assert "FOLIAGE_CONFIG" in out


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        run_cli("--version")
    assert exc_info.value.code == 0
    assert capsys.readouterr().out.startswith("foliage ")


def test_create_root_and_verify(
    capsys: pytest.CaptureFixture[str], config_file: Path
) -> None:
    run_cli("init-db", "--config", str(config_file))
    assert "Initialized database" in capsys.readouterr().out

    run_cli(
        "create-root",
        "--owner",
        "alice",
        "--category",
        "organizational",
        "--name",
        "Company",
        "--max-bytes",
        "1000",
        "--config",
        str(config_file),
    )
    out = capsys.readouterr().out
    assert "Created organizational root 'Company'" in out
    root_id = out.split("ID: ")[1].split(",")[0]

    run_cli("verify", "--root", root_id, "--config", str(config_file))
    out = capsys.readouterr().out
    assert "Scanned: 0" in out
    assert "Missing content: 0" in out

    run_cli("purge-expired", "--config", str(config_file))
    assert "Purged 0 nodes" in capsys.readouterr().out


def test_unknown_root_fails(config_file: Path) -> None:
    run_cli("init-db", "--config", str(config_file))
    with pytest.raises(SystemExit) as exc_info:
        run_cli("verify", "--root", "42", "--config", str(config_file))
    assert exc_info.value.code == 1
