# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from .cache import ChartCache
from .helmexec import HelmExec
from .operations import Run, RunOptions
from .state import StateError, StateOverrides, load_state
from .ui.console import Console

DEFAULT_STATE_FILES = ("helmfile.yaml", "chartfleet.yaml")


def discover_state_file(file_arg: str | None, console: Console) -> Path:
    """
    Find the state file from the argument or the defaults.

    Raises:
        SystemExit: If no state file exists
    """
    if file_arg:
        path = Path(file_arg)
        if not path.exists():
            console.print_error(
                "State file not found",
                f"Could not find state file: {file_arg}",
                suggestion="Specify an existing file:\n  chartfleet --file helmfile.yaml sync",
            )
            sys.exit(1)
        return path

    for name in DEFAULT_STATE_FILES:
        if Path(name).exists():
            return Path(name)

    console.print_error(
        "No state file found",
        "Could not find a state file.",
        details=["Looked for:"] + [f"  {n}" for n in DEFAULT_STATE_FILES],
        suggestion="Specify a state file explicitly:\n  chartfleet --file my-state.yaml sync",
    )
    sys.exit(1)


def _exit_code(e: BaseException) -> int:
    code = getattr(e, "exit_code", None)
    return code if isinstance(code, int) and code > 0 else 1


def _fail(console: Console, e: BaseException) -> None:
    console.print_exception(e)
    sys.exit(_exit_code(e))


def run_options(f):
    """Flags shared by every release-level subcommand."""
    options = [
        click.option("--concurrency", default=0, type=int, envvar="CHARTFLEET_CONCURRENCY",
                     help="Maximum number of concurrent helm processes (0 means unlimited)"),
        click.option("--include-needs", is_flag=True, default=False,
                     help="Include the needs of the selected releases"),
        click.option("--include-transitive-needs", is_flag=True, default=False,
                     help="Include the transitive needs of the selected releases"),
        click.option("--skip-needs", is_flag=True, default=False,
                     help="Do not automatically include the needs of the selected releases"),
        click.option("--skip-deps", is_flag=True, default=False, envvar="CHARTFLEET_SKIP_DEPS",
                     help="Skip running `helm dependency build`"),
        click.option("--skip-refresh", is_flag=True, default=False, envvar="CHARTFLEET_SKIP_REFRESH",
                     help="Pass --skip-refresh to `helm dependency build`"),
        click.option("--skip-repos", is_flag=True, default=False, envvar="CHARTFLEET_SKIP_REPOS",
                     help="Skip `helm repo add` and `helm repo update`"),
        click.option("--skip-cleanup", is_flag=True, default=False,
                     help="Keep temporary values and patch files"),
        click.option("--values", "values_files", multiple=True,
                     help="Additional values files passed to every release"),
        click.option("--set", "set_values", multiple=True,
                     help="Additional key=value pairs passed to every release"),
        click.option("--args", "extra_args", default="",
                     help="Extra arguments passed to helm, space separated"),
        click.option("--lock-timeout", default=None, type=float, envvar="CHARTFLEET_LOCK_TIMEOUT",
                     help="Seconds to wait for an OCI chart lock (default: wait forever)"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _build_options(ctx, **kw) -> RunOptions:
    return RunOptions(
        selectors=list(ctx.obj["selectors"]),
        concurrency=kw.get("concurrency") or 0,
        include_needs=kw.get("include_needs", False),
        include_transitive_needs=kw.get("include_transitive_needs", False),
        skip_needs=kw.get("skip_needs", False),
        skip_deps=kw.get("skip_deps", False),
        skip_refresh=kw.get("skip_refresh", False),
        skip_repos=kw.get("skip_repos", False),
        skip_cleanup=kw.get("skip_cleanup", False),
        values=list(kw.get("values_files") or ()),
        set=list(kw.get("set_values") or ()),
        args=(kw.get("extra_args") or "").split(),
        detailed_exitcode=kw.get("detailed_exitcode", False),
        output_dir=kw.get("output_dir") or "",
        lock_timeout=kw.get("lock_timeout"),
    )


def _load_run(ctx) -> Run:
    console: Console = ctx.obj["console"]
    path = discover_state_file(ctx.obj["file"], console)
    try:
        state = load_state(
            str(path),
            console,
            StateOverrides(kube_context=ctx.obj["kube_context"], namespace=ctx.obj["namespace"]),
        )
    except StateError as e:
        _fail(console, e)
    helm = HelmExec(console, helm_binary=ctx.obj["helm_binary"])
    return Run(state, helm, console)


def _invoke(ctx, fn):
    console: Console = ctx.obj["console"]
    try:
        return fn()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(console, e)


# -------------------- Root --------------------

@click.group()
@click.option("-f", "--file", "state_file", default=None, envvar="CHARTFLEET_FILE",
              help="State file (defaults to helmfile.yaml or chartfleet.yaml)")
@click.option("-l", "--selector", "selectors", multiple=True,
              help="Only run on releases matching the label selector, e.g. tier=frontend,name!=db")
@click.option("-n", "--namespace", default="", envvar="CHARTFLEET_NAMESPACE",
              help="Override the namespace of every release")
@click.option("--kube-context", default="", envvar="CHARTFLEET_KUBE_CONTEXT",
              help="Override the kube context of every release")
@click.option("--helm-binary", default="helm", envvar="CHARTFLEET_HELM_BINARY", show_default=True,
              help="Path to the helm binary")
@click.option("--debug", is_flag=True, default=False, envvar="CHARTFLEET_DEBUG",
              help="Enable debug mode (show stack traces and detailed output)")
@click.pass_context
def cli(ctx, state_file, selectors, namespace, kube_context, helm_binary, debug):
    """chartfleet: declarative, dependency-ordered helm releases."""
    ctx.ensure_object(dict)
    ctx.obj["console"] = Console(debug=debug)
    ctx.obj["file"] = state_file
    ctx.obj["selectors"] = selectors
    ctx.obj["namespace"] = namespace
    ctx.obj["kube_context"] = kube_context
    ctx.obj["helm_binary"] = helm_binary
    ctx.obj["debug"] = debug


# -------------------- Release commands --------------------

@cli.command()
@run_options
@click.pass_context
def sync(ctx, **kw):
    """Install or upgrade every selected release."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.sync(_build_options(ctx, **kw)))


@cli.command()
@run_options
@click.pass_context
def apply(ctx, **kw):
    """Sync only the releases that have changes."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.apply(_build_options(ctx, **kw)))


@cli.command()
@run_options
@click.option("--detailed-exitcode", is_flag=True, default=False,
              help="Exit with 2 when there are changes")
@click.pass_context
def diff(ctx, **kw):
    """Show the changes a sync would make."""
    run = _load_run(ctx)
    opts = _build_options(ctx, **kw)
    changed = _invoke(ctx, lambda: run.diff(opts))
    if changed and opts.detailed_exitcode:
        sys.exit(2)


@cli.command()
@run_options
@click.pass_context
def destroy(ctx, **kw):
    """Uninstall every selected release, dependents first."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.destroy(_build_options(ctx, **kw)))


@cli.command()
@run_options
@click.pass_context
def template(ctx, **kw):
    """Render the manifests of every selected release."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.template(_build_options(ctx, **kw)))


@cli.command()
@run_options
@click.pass_context
def lint(ctx, **kw):
    """Lint the chart of every selected release."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.lint(_build_options(ctx, **kw)))


@cli.command()
@run_options
@click.pass_context
def test(ctx, **kw):
    """Run `helm test` for every selected release."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.test(_build_options(ctx, **kw)))


@cli.command()
@run_options
@click.pass_context
def status(ctx, **kw):
    """Show the status of every selected release."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.status(_build_options(ctx, **kw)))


@cli.command()
@run_options
@click.option("--output-dir", required=True, help="Directory the charts are downloaded into")
@click.pass_context
def fetch(ctx, **kw):
    """Download the chart of every selected release."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.fetch(_build_options(ctx, **kw)))


@cli.command()
@click.option("--skip-repos", is_flag=True, default=False, envvar="CHARTFLEET_SKIP_REPOS",
              help="Skip `helm repo add` and `helm repo update`")
@click.pass_context
def deps(ctx, skip_repos):
    """Update the dependencies of every selected local chart."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.deps(_build_options(ctx, skip_repos=skip_repos)))


@cli.command()
@click.pass_context
def repos(ctx):
    """Add and update every repository in the state file."""
    run = _load_run(ctx)
    _invoke(ctx, run.repos)


@cli.command("list")
@click.pass_context
def list_cmd(ctx):
    """List releases matching the selectors."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.list_releases(_build_options(ctx)))


@cli.command("show-dag")
@click.option("--include-needs", is_flag=True, default=False)
@click.option("--include-transitive-needs", is_flag=True, default=False)
@click.option("--skip-needs", is_flag=True, default=False)
@click.option("--batches", is_flag=True, default=False, help="Print one row per group")
@click.pass_context
def show_dag(ctx, batches, **kw):
    """Print the execution groups of the selected releases."""
    run = _load_run(ctx)
    _invoke(ctx, lambda: run.show_dag(_build_options(ctx, **kw), batches=batches))


# -------------------- Cache --------------------

@cli.group()
def cache():
    """Inspect or clear the chart cache."""


@cache.command("info")
@click.pass_context
def cache_info(ctx):
    """Show the cache directory and its entries."""
    console: Console = ctx.obj["console"]
    c = ChartCache(console=console)
    console.print_info(f"Cache directory: {c.root}")
    rows = [[e.name, str(e.size_bytes)] for e in c.info()]
    if rows:
        console.print_table(["NAME", "SIZE"], rows)
    else:
        console.print_info("Cache is empty")


@cache.command("cleanup")
@click.pass_context
def cache_cleanup(ctx):
    """Remove the cache directory."""
    console: Console = ctx.obj["console"]
    c = ChartCache(console=console)
    c.cleanup()
    console.print_info(f"Removed {c.root}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
