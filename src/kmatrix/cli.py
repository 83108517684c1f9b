"""
kmatrix CLI.

Commands:
- pew: build, run and test a module/exploit across kernels
- kernel list: show the resolved kernel catalog
- log query: list stored results
- log dump: show one stored result
- gen module|exploit: write an artifact skeleton
"""

from __future__ import annotations

import dataclasses
import logging
import sys
from pathlib import Path

import click
import structlog
from rich.console import Console
from rich.table import Table

from kmatrix import __version__
from kmatrix.errors import ConfigError, KmatrixError, ResultNotFound, SelectionError, StoreError

console = Console()

EXIT_GATE_FAILED = 1
EXIT_NOT_FOUND = 1
EXIT_ERROR = 2

_VERDICT_STYLE = {
    "success": "green",
    "test_failed": "red",
    "timeout": "yellow",
    "infra_error": "magenta",
}


def configure_logging(verbose: bool) -> None:
    """Route structlog to stderr so tables on stdout stay clean."""
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _fail(ctx: click.Context, exc: KmatrixError) -> None:
    console.print(f"[red]✗[/red] {exc}")
    ctx.exit(EXIT_ERROR)


def _get_config(ctx: click.Context):
    """Get or load config from context, applying global option overrides."""
    from kmatrix.config import MatrixConfig
    from kmatrix.reliability import validate_threshold

    if "config" not in ctx.obj:
        config = MatrixConfig.load(ctx.obj.get("config_path"))
        if ctx.obj.get("kernels"):
            config.kernels_path = ctx.obj["kernels"]
        if ctx.obj.get("user_kernels"):
            config.user_kernels_path = ctx.obj["user_kernels"]
        if ctx.obj.get("db"):
            config.db_path = ctx.obj["db"]
        if ctx.obj.get("threshold") is not None:
            try:
                config.reliability.threshold = validate_threshold(ctx.obj["threshold"])
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
        if ctx.obj.get("timeout") is not None:
            config.scheduling.global_timeout_seconds = ctx.obj["timeout"]
        if ctx.obj.get("qemu_timeout") is not None:
            config.qemu.timeout_seconds = ctx.obj["qemu_timeout"]
        if ctx.obj.get("docker_timeout") is not None:
            config.docker.timeout_seconds = ctx.obj["docker_timeout"]
        if ctx.obj.get("docker_registry"):
            config.docker.registry = ctx.obj["docker_registry"].rstrip("/")
        ctx.obj["config"] = config
    return ctx.obj["config"]


def _load_kernels(config):
    from kmatrix.catalog import load_catalog, resolve_fallbacks

    sources = [config.kernels_path]
    if config.user_kernels_path.exists():
        sources.append(config.user_kernels_path)
    return resolve_fallbacks(load_catalog(*sources))


def _open_store(config):
    from kmatrix.store import ResultStore

    return ResultStore(config.db_path)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", type=Path, help="Path to config file")
@click.option("--kernels", type=Path, help="Path to main kernels config")
@click.option("--user-kernels", type=Path, envvar="KMATRIX_KCFG", help="User kernels config")
@click.option("--db", type=Path, envvar="KMATRIX_DB", help="Path to results database")
@click.option("--threshold", type=float, help="Reliability threshold for exit code")
@click.option("--timeout", type=float, help="Seconds after which no new runs start")
@click.option("--qemu-timeout", type=float, help="Seconds to wait for a machine to boot")
@click.option("--docker-timeout", type=float, help="Seconds per artifact build")
@click.option("--docker-registry", type=str, help="Registry holding the build images")
@click.option("--verbose", "-v", is_flag=True, help="Show more information")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    kernels: Path | None,
    user_kernels: Path | None,
    db: Path | None,
    threshold: float | None,
    timeout: float | None,
    qemu_timeout: float | None,
    docker_timeout: float | None,
    docker_registry: str | None,
    verbose: bool,
) -> None:
    """kmatrix - kernel {module, exploit} test matrix."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj.update(
        config_path=config_path,
        kernels=kernels,
        user_kernels=user_kernels,
        db=db,
        threshold=threshold,
        timeout=timeout,
        qemu_timeout=qemu_timeout,
        docker_timeout=docker_timeout,
        docker_registry=docker_registry,
    )


@main.command()
@click.option("--path", type=click.Path(exists=True, file_okay=False, path_type=Path), default=Path("."), help="Artifact directory")
@click.option("--kernel", "pattern", type=str, help="Override kernel regex")
@click.option("--guess", is_flag=True, help="Try all defined kernels")
@click.option("--max", "max_kernels", type=int, help="Test no more than N kernels")
@click.option("--runs", type=click.IntRange(min=1), default=1, show_default=True, help="Runs per kernel")
@click.option("--threads", type=click.IntRange(min=1), help="Parallel runs")
@click.option("--binary", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Use binary, do not build")
@click.option("--test", "test_script", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Override test script")
@click.option("--dist", type=Path, help="Copy build results here")
@click.option("--tag", type=str, help="Tag for stored results")
@click.option("--run-timeout", type=float, help="Seconds per run (deploy + test)")
@click.pass_context
def pew(
    ctx: click.Context,
    path: Path,
    pattern: str | None,
    guess: bool,
    max_kernels: int | None,
    runs: int,
    threads: int | None,
    binary: Path | None,
    test_script: Path | None,
    dist: Path | None,
    tag: str | None,
    run_timeout: float | None,
) -> None:
    """Build, run and test module/exploit."""
    from kmatrix.artifact import load_artifact
    from kmatrix.factory import build_pipeline
    from kmatrix.matrix.runner import MatrixRunner
    from kmatrix.providers.docker import check_docker_access
    from kmatrix.providers.process import check_required_tools

    try:
        config = _get_config(ctx)
        tools = [config.qemu.binary, "ssh", "scp"]
        if binary is None:
            tools.append(config.docker.binary)
        check_required_tools(tools)
        if binary is None:
            check_docker_access(config.docker.binary)

        catalog = _load_kernels(config)
        artifact = load_artifact(path)
        if binary is not None:
            artifact = dataclasses.replace(artifact, binary_path=binary.resolve())
        if test_script is not None:
            artifact = dataclasses.replace(artifact, test_script=test_script.resolve())

        scheduling = config.scheduling
        with _open_store(config) as store:
            runner = MatrixRunner(
                store,
                build_pipeline(config, dist_dir=dist),
                threshold=config.reliability.threshold,
                timeout_policy=config.reliability.timeout_policy,
            )
            outcome = runner.run(
                catalog,
                artifact,
                pattern=pattern,
                guess_all=guess,
                runs=runs,
                concurrency=threads or scheduling.concurrency,
                global_timeout=scheduling.global_timeout_seconds,
                run_timeout=run_timeout if run_timeout is not None else scheduling.run_timeout_seconds,
                tag=tag,
                max_kernels=max_kernels,
            )
    except (ConfigError, SelectionError, StoreError) as exc:
        _fail(ctx, exc)
        return

    _display_results(outcome.results)
    report = outcome.reliability
    rate_text = "n/a" if report.rate is None else f"{report.rate:.2f}"
    status = "[green]PASS[/green]" if report.passed else "[red]FAIL[/red]"
    console.print(
        f"\n{status} tag={outcome.tag} rate={rate_text} threshold={report.threshold:.2f} "
        f"runs={report.total} skipped={outcome.schedule.skipped}"
    )

    if not outcome.passed:
        ctx.exit(EXIT_GATE_FAILED)


@main.group()
def kernel() -> None:
    """Kernel catalog."""
    pass


@kernel.command(name="list")
@click.pass_context
def kernel_list(ctx: click.Context) -> None:
    """List kernels after fallback resolution."""
    try:
        catalog = _load_kernels(_get_config(ctx))
    except ConfigError as exc:
        _fail(ctx, exc)
        return

    table = Table(title="Kernels")
    table.add_column("Distro", style="cyan")
    table.add_column("Version")
    table.add_column("Release")
    table.add_column("Rootfs")

    for descriptor in catalog:
        rootfs = str(descriptor.rootfs_path) if descriptor.usable else "[red]unusable[/red]"
        table.add_row(descriptor.distro, descriptor.version, descriptor.release, rootfs)

    console.print(table)


@main.group()
def log() -> None:
    """Stored results."""
    pass


@log.command(name="query")
@click.option("--path", type=click.Path(exists=True, file_okay=False, path_type=Path), help="Artifact directory [default: .]")
@click.option("--num", type=click.IntRange(min=1), default=50, show_default=True, help="How many results")
@click.option("--tag", type=str, help="Filter tag")
@click.option("--rate", "show_rate", is_flag=True, help="Show artifact success rate")
@click.pass_context
def log_query(
    ctx: click.Context, path: Path | None, num: int, tag: str | None, show_rate: bool
) -> None:
    """
    Query stored results, newest first.

    Results are scoped to the artifact in --path. Without --path the current
    directory is used when it holds an artifact file, otherwise every
    artifact is listed.
    """
    from kmatrix.artifact import ARTIFACT_FILE, load_artifact
    from kmatrix.reliability import evaluate
    from kmatrix.store import ResultFilter

    try:
        config = _get_config(ctx)
        artifact_name = None
        if path is not None or (Path(".") / ARTIFACT_FILE).exists():
            artifact_name = load_artifact(path or Path(".")).name
        with _open_store(config) as store:
            result_filter = ResultFilter(tag=tag, artifact=artifact_name, limit=num)
            results = store.query(result_filter)
            report = (
                evaluate(
                    store,
                    result_filter,
                    config.reliability.threshold,
                    config.reliability.timeout_policy,
                )
                if show_rate
                else None
            )
    except (ConfigError, StoreError) as exc:
        _fail(ctx, exc)
        return

    if not results:
        console.print("[yellow]No results found[/yellow]")
        return

    _display_results(results)
    if report is not None:
        rate_text = "n/a" if report.rate is None else f"{report.rate:.2f}"
        console.print(f"\nSuccess rate: {rate_text} ({report.total} runs)")


@log.command(name="dump")
@click.argument("result_id", type=int)
@click.pass_context
def log_dump(ctx: click.Context, result_id: int) -> None:
    """Show all info for the result with ID."""
    try:
        with _open_store(_get_config(ctx)) as store:
            result = store.get(result_id)
    except ResultNotFound as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        ctx.exit(EXIT_NOT_FOUND)
        return
    except (ConfigError, StoreError) as exc:
        _fail(ctx, exc)
        return

    request = result.request
    console.print(f"[bold]ID:[/bold] {result.id}")
    console.print(f"[bold]Tag:[/bold] {request.tag}")
    console.print(f"[bold]Artifact:[/bold] {request.artifact.name} ({request.artifact.kind.value})")
    console.print(f"[bold]Kernel:[/bold] {request.target.description}")
    console.print(f"[bold]Attempt:[/bold] {request.attempt}")
    console.print(f"[bold]Mitigations:[/bold] {request.artifact.toggles.to_dict()}")
    console.print(f"[bold]Verdict:[/bold] {result.verdict.value}" + (f" ({result.reason})" if result.reason else ""))
    console.print(f"[bold]Started:[/bold] {result.started_at.isoformat()}")
    console.print(f"[bold]Duration:[/bold] {result.duration_seconds:.1f}s")
    console.print()
    console.print(result.output, markup=False, highlight=False)


@main.group()
def gen() -> None:
    """Generate .kmatrix.yaml skeleton."""
    pass


def _write_skeleton(ctx: click.Context, path: Path, kind_value: str, force: bool) -> None:
    from kmatrix.artifact import ArtifactKind, write_skeleton

    try:
        config_path = write_skeleton(path, ArtifactKind(kind_value), force=force)
    except ConfigError as exc:
        _fail(ctx, exc)
        return
    console.print(f"[green]✓[/green] Wrote {config_path}")


_GEN_PATH = click.option(
    "--path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    help="Artifact directory",
)
_GEN_FORCE = click.option("--force", is_flag=True, help="Overwrite an existing file")


@gen.command(name="module")
@_GEN_PATH
@_GEN_FORCE
@click.pass_context
def gen_module(ctx: click.Context, path: Path, force: bool) -> None:
    """Generate .kmatrix.yaml skeleton for kernel module."""
    _write_skeleton(ctx, path, "module", force)


@gen.command(name="exploit")
@_GEN_PATH
@_GEN_FORCE
@click.pass_context
def gen_exploit(ctx: click.Context, path: Path, force: bool) -> None:
    """Generate .kmatrix.yaml skeleton for kernel exploit."""
    _write_skeleton(ctx, path, "exploit", force)


def _display_results(results) -> None:
    table = Table()
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Started")
    table.add_column("Tag", style="cyan")
    table.add_column("Artifact")
    table.add_column("Kernel")
    table.add_column("Verdict")
    table.add_column("Duration", justify="right")

    for result in results:
        verdict = result.verdict.value
        style = _VERDICT_STYLE.get(verdict, "white")
        table.add_row(
            str(result.id),
            result.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            result.request.tag,
            result.request.artifact.name,
            result.request.target.description,
            f"[{style}]{verdict}[/{style}]",
            f"{result.duration_seconds:.1f}s",
        )

    console.print(table)


if __name__ == "__main__":
    main()
