from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .artifacts import ArtifactStore
from .config import Settings
from .generator import CodeGenerator, ReplayGenerator, SubprocessGenerator
from .ledger import Ledger
from .registry import ToolRegistry
from .runtime import Runtime
from .utils import read_json

app = typer.Typer(help="callforge CLI")
console = Console()

HOME_OPTION = typer.Option(None, "--home", help="State directory (default: CALLFORGE_HOME).")
ARG_OPTION = typer.Option(None, "--arg", help="Positional argument as JSON; repeatable.")
KWARGS_OPTION = typer.Option(None, "--kwargs", help="Keyword arguments as a JSON object.")
CONTRACT_OPTION = typer.Option(None, "--contract", exists=True, dir_okay=False)
GENERATOR_CMD_OPTION = typer.Option(None, "--generator-cmd")
REPLAY_FILE_OPTION = typer.Option(None, "--replay-file", exists=True, dir_okay=False)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v")

artifacts_app = typer.Typer(help="Artifact commands")
registry_app = typer.Typer(help="Tool registry commands")
log_app = typer.Typer(help="Call log commands")


@app.callback()
def main(verbose: bool = VERBOSE_OPTION) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _settings(home: Optional[Path]) -> Settings:
    if home is None:
        return Settings()
    return Settings(home=home)


def _parse_json(value: str, label: str) -> Any:
    try:
        return orjson.loads(value)
    except orjson.JSONDecodeError as exc:
        raise typer.BadParameter(f"{label} is not valid JSON: {exc}") from exc


def _build_generator(
    generator_cmd: Optional[str], replay_file: Optional[Path], timeout_s: float
) -> CodeGenerator:
    if generator_cmd and replay_file:
        raise typer.BadParameter("use either --generator-cmd or --replay-file, not both")
    if generator_cmd:
        return SubprocessGenerator(shlex.split(generator_cmd), timeout_s=timeout_s)
    if replay_file is not None:
        return ReplayGenerator(replay_file)
    raise typer.BadParameter("missing --generator-cmd or --replay-file")


def _print_mapping(title: str, data: Dict[str, Any]) -> None:
    table = Table(title=title)
    table.add_column("Field")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            value = orjson.dumps(value).decode("utf-8")
        table.add_row(key, str(value))
    console.print(table)


@app.command("call")
def call_cmd(
    role: str,
    method: str,
    arg: Optional[List[str]] = ARG_OPTION,
    kwargs: Optional[str] = KWARGS_OPTION,
    contract: Optional[Path] = CONTRACT_OPTION,
    generator_cmd: Optional[str] = GENERATOR_CMD_OPTION,
    replay_file: Optional[Path] = REPLAY_FILE_OPTION,
    home: Optional[Path] = HOME_OPTION,
) -> None:
    settings = _settings(home)
    generator = _build_generator(generator_cmd, replay_file, settings.provider_timeout_seconds)
    args = [_parse_json(value, "--arg") for value in arg or []]
    call_kwargs = _parse_json(kwargs, "--kwargs") if kwargs else {}
    if not isinstance(call_kwargs, dict):
        raise typer.BadParameter("--kwargs must be a JSON object")
    contracts = {method: read_json(contract)} if contract is not None else None
    with Runtime.open(generator, settings) as runtime:
        outcome = runtime.agent(role, contracts=contracts).call(method, *args, **call_kwargs)
    console.print_json(orjson.dumps(outcome.to_dict(), default=repr).decode("utf-8"))
    if outcome.is_error:
        raise typer.Exit(code=1)


@artifacts_app.command("show")
def artifacts_show_cmd(role: str, method: str, home: Optional[Path] = HOME_OPTION) -> None:
    store = ArtifactStore(_settings(home).artifacts_dir)
    artifact = store.load(role, method)
    if artifact is None:
        console.print(f"no artifact for {role}.{method}")
        raise typer.Exit(code=1)
    summary = {
        key: artifact.get(key)
        for key in (
            "role",
            "method_name",
            "code_checksum",
            "cacheable",
            "cacheability_reason",
            "input_sensitive",
            "success_count",
            "failure_count",
            "recent_failure_rate",
            "repair_count_since_regen",
            "last_failure_reason",
        )
    }
    lifecycle = artifact.get("lifecycle") or {}
    summary["incumbent_checksum"] = lifecycle.get("incumbent_checksum")
    summary["history"] = [entry.get("trigger") for entry in artifact.get("history") or []]
    _print_mapping(f"{role}.{method}", summary)
    console.print(artifact.get("code") or "", markup=False, highlight=False)


@artifacts_app.command("list")
def artifacts_list_cmd(home: Optional[Path] = HOME_OPTION) -> None:
    store = ArtifactStore(_settings(home).artifacts_dir)
    table = Table(title="Artifacts")
    for column in ("Role", "Method", "Checksum", "Successes", "Failures", "Cacheable"):
        table.add_column(column)
    for artifact in store.list_artifacts():
        table.add_row(
            str(artifact.get("role")),
            str(artifact.get("method_name")),
            str(artifact.get("code_checksum", ""))[:19],
            str(artifact.get("success_count", 0)),
            str(artifact.get("failure_count", 0)),
            str(artifact.get("cacheable")),
        )
    console.print(table)


@registry_app.command("show")
def registry_show_cmd(home: Optional[Path] = HOME_OPTION) -> None:
    tools = ToolRegistry(_settings(home).registry_path).load()
    table = Table(title="Tools")
    for column in ("Role", "Purpose", "Methods", "Uses", "Successes", "Failures"):
        table.add_column(column)
    for role, entry in sorted(tools.items()):
        table.add_row(
            role,
            str(entry.get("purpose") or ""),
            ", ".join(entry.get("methods") or []),
            str(entry.get("usage_count", 0)),
            str(entry.get("success_count", 0)),
            str(entry.get("failure_count", 0)),
        )
    console.print(table)


@log_app.command("verify")
def log_verify_cmd(home: Optional[Path] = HOME_OPTION) -> None:
    path = _settings(home).call_log_path
    if not path.exists():
        console.print({"ok": True, "message": "ok (0 events)"})
        return
    ok, message = Ledger.verify_chain(path)
    console.print({"ok": ok, "message": message})
    if not ok:
        raise typer.Exit(code=1)


app.add_typer(artifacts_app, name="artifacts")
app.add_typer(registry_app, name="registry")
app.add_typer(log_app, name="log")


if __name__ == "__main__":
    app()
