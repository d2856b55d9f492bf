from pathlib import Path

import orjson
from typer.testing import CliRunner

from callforge.cli import app
from callforge.config import Settings
from callforge.registry import ToolRegistry


def _replay_file(tmp_path: Path) -> Path:
    path = tmp_path / "programs.json"
    path.write_bytes(
        orjson.dumps(
            [
                {"role": "calc", "method_name": "add", "code": "return args[0] + args[1]"},
                {"role": "calc", "method_name": "label", "code": "return 7"},
            ]
        )
    )
    return path


def _call(tmp_path: Path, *extra: str):
    home = tmp_path / "home"
    return CliRunner().invoke(
        app,
        ["call", *extra, "--replay-file", str(_replay_file(tmp_path)), "--home", str(home)],
    )


def test_call_prints_outcome_and_persists_artifact(tmp_path: Path) -> None:
    result = _call(tmp_path, "calc", "add", "--arg", "1", "--arg", "2")
    assert result.exit_code == 0, result.stdout
    assert '"status": "ok"' in result.stdout
    assert '"value": 3' in result.stdout

    home = tmp_path / "home"
    runner = CliRunner()
    listed = runner.invoke(app, ["artifacts", "list", "--home", str(home)])
    assert listed.exit_code == 0
    assert "calc" in listed.stdout and "add" in listed.stdout

    shown = runner.invoke(app, ["artifacts", "show", "calc", "add", "--home", str(home)])
    assert shown.exit_code == 0
    assert "return args[0] + args[1]" in shown.stdout

    verified = runner.invoke(app, ["log", "verify", "--home", str(home)])
    assert verified.exit_code == 0
    assert "ok (1 events)" in verified.stdout


def test_contract_violation_exits_nonzero(tmp_path: Path) -> None:
    contract = tmp_path / "contract.json"
    contract.write_bytes(orjson.dumps({"deliverable": {"type": "object", "required": ["label"]}}))
    result = _call(tmp_path, "calc", "label", "--contract", str(contract))
    assert result.exit_code == 1
    assert '"error_type": "contract_violation"' in result.stdout


def test_missing_replay_record_is_a_provider_error(tmp_path: Path) -> None:
    result = _call(tmp_path, "calc", "sub")
    assert result.exit_code == 1
    assert '"error_type": "provider"' in result.stdout


def test_generator_source_is_required(tmp_path: Path) -> None:
    result = CliRunner().invoke(app, ["call", "calc", "add", "--home", str(tmp_path)])
    assert result.exit_code != 0


def test_show_missing_artifact(tmp_path: Path) -> None:
    result = CliRunner().invoke(app, ["artifacts", "show", "calc", "add", "--home", str(tmp_path)])
    assert result.exit_code == 1
    assert "no artifact for calc.add" in result.stdout


def test_registry_show_and_empty_log(tmp_path: Path) -> None:
    ToolRegistry(Settings(home=tmp_path).registry_path).register(
        "calc", purpose="arithmetic", methods=["add"]
    )
    runner = CliRunner()
    shown = runner.invoke(app, ["registry", "show", "--home", str(tmp_path)])
    assert shown.exit_code == 0
    assert "calc" in shown.stdout and "arithmetic" in shown.stdout

    verified = runner.invoke(app, ["log", "verify", "--home", str(tmp_path)])
    assert verified.exit_code == 0
    assert "ok (0 events)" in verified.stdout
