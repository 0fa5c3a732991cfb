"""CLI interface for xstash.

Commands:
    setup   - Configure the X API access token
    sync    - Mirror new bookmarks into the local database
    stats   - Show what is stored and what it cost
    status  - Show config, database and last run
    config  - Show the config file path or its contents
"""

import sys
from pathlib import Path

import click
import httpx

from .config import (
    CONFIG_FILE,
    AppConfig,
    AuthConfig,
    config_exists,
    load_config,
    mask_secret,
    save_config,
)
from .exceptions import SyncCancelled, XstashError
from .logging_config import setup_logging


def should_prompt_for_cost_confirmation(confirm_cost: bool, yes: bool) -> bool:
    return confirm_cost and not yes


def ensure_interactive_prompt_available(is_terminal: bool) -> None:
    if not is_terminal:
        raise XstashError(
            "Cost confirmation requires an interactive terminal. "
            "Use --yes to auto-accept or --no-confirm-cost to skip confirmation."
        )


def _stdin_is_terminal() -> bool:
    return sys.stdin.isatty()


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _load(config_path: Path) -> AppConfig:
    try:
        return load_config(config_path)
    except XstashError as e:
        _fail(str(e))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--config", type=click.Path(), default=None, help="Config file path")
@click.pass_context
def main(ctx, verbose, config):
    """xstash: mirror your X bookmarks into a local SQLite database."""
    setup_logging(debug=verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else CONFIG_FILE


@main.command()
@click.pass_context
def setup(ctx):
    """Configure the X API access token."""
    config_path = ctx.obj["config_path"]
    existing = _load(config_path) if config_exists(config_path) else AppConfig()

    click.echo("xstash setup")
    click.echo("=" * 40)
    click.echo()
    click.echo("You need a user-context OAuth 2.0 access token with the scopes")
    click.echo("  bookmark.read tweet.read users.read")
    click.echo("Create one from your app at developer.x.com.")
    click.echo()

    access_token = click.prompt("access_token", hide_input=True)

    click.echo()
    click.echo("(Optional) Your numeric user id. Press Enter to look it up on each sync.")
    user_id = click.prompt(
        "user_id", default=existing.auth.user_id or "", show_default=False
    )

    config = AppConfig(
        auth=AuthConfig(access_token=access_token, user_id=user_id or None),
        sync=existing.sync,
        cost=existing.cost,
        data_dir=existing.data_dir,
    )
    save_config(config, config_path)
    click.echo(f"\nConfig saved to {config_path}")
    click.echo("Run 'xstash sync' to download your bookmarks.")


@main.command()
@click.option("--max-new", default=None, help="Stop after this many new bookmarks, or 'all'")
@click.option("--media", is_flag=True, help="Also download images and videos")
@click.option(
    "--confirm-cost/--no-confirm-cost",
    default=False,
    help="Ask before starting once the cost estimate is shown",
)
@click.option("--yes", "-y", is_flag=True, help="Accept the cost estimate without asking")
@click.pass_context
def sync(ctx, max_new, media, confirm_cost, yes):
    """Mirror new bookmarks into the local database."""
    config = _load(ctx.obj["config_path"])
    if not config.auth.access_token:
        _fail("No access token. Run 'xstash setup' or set XSTASH_ACCESS_TOKEN.")

    # Lazy imports so --help stays fast
    from .client import XApiClient
    from .store import Store
    from .sync import SyncOrchestrator, cost_estimate_text

    try:
        config.data_dir.mkdir(parents=True, exist_ok=True)
        with Store(config.db_path, config.media_root) as store, XApiClient(
            config.auth.access_token
        ) as client:
            orchestrator = SyncOrchestrator(store, client, config, capture_media=media)
            plan = orchestrator.plan(max_new)
            click.echo(f"Mode: {plan.mode}")
            click.echo(cost_estimate_text(plan.requested_max_new, config.cost))

            if should_prompt_for_cost_confirmation(confirm_cost, yes):
                ensure_interactive_prompt_available(_stdin_is_terminal())
                if not click.confirm("Continue sync with this estimate?", default=False):
                    raise SyncCancelled("Sync cancelled by user.")

            summary = orchestrator.run(plan)
    except (RuntimeError, httpx.HTTPError) as e:
        _fail(str(e))

    click.echo("Sync completed.")
    for line in summary.lines():
        click.echo(line)


@main.command()
@click.pass_context
def stats(ctx):
    """Show what is stored and what it cost."""
    config = _load(ctx.obj["config_path"])
    if not config.db_path.exists():
        click.echo("No database yet. Run 'xstash sync' first.")
        return

    from .stats import collect_stats
    from .store import Store

    try:
        with Store(config.db_path, config.media_root) as store:
            result = collect_stats(store)
    except RuntimeError as e:
        _fail(str(e))

    for line in result.lines():
        click.echo(line)


@main.command()
@click.pass_context
def status(ctx):
    """Show config, database and last run."""
    config_path = ctx.obj["config_path"]
    has_config = config_exists(config_path)

    click.echo("xstash status")
    click.echo("=" * 40)
    click.echo(f"Config: {'Found' if has_config else 'Not configured'} ({config_path})")

    config = _load(config_path)
    click.echo(f"Access token: {mask_secret(config.auth.access_token)}")
    click.echo(f"Database: {config.db_path}")

    if not config.db_path.exists():
        click.echo("Database file: Not yet created")
        if not has_config:
            click.echo("\nRun 'xstash setup' to get started.")
        return

    from .store import Store

    try:
        with Store(config.db_path, config.media_root) as store:
            bookmarks = store.bookmark_count()
            run = store.latest_run()
    except RuntimeError as e:
        _fail(str(e))

    click.echo(f"Bookmarks: {bookmarks}")
    if run is None:
        click.echo("Last run: never")
        return
    click.echo(
        f"Last run: #{run.id} {run.mode} {run.status} "
        f"(started {run.started_at}, new bookmarks {run.counters.new_bookmarks_count}, "
        f"cost {run.estimated_cost_usd:.4f} USD)"
    )
    if run.error_message:
        click.echo(f"Last error: {run.error_message}")


@main.group("config")
def config_group():
    """Inspect the configuration."""


@config_group.command("path")
@click.pass_context
def config_path_cmd(ctx):
    """Print the config file path."""
    click.echo(str(ctx.obj["config_path"]))


@config_group.command("show")
@click.pass_context
def config_show(ctx):
    """Print the effective configuration with the token masked."""
    config = _load(ctx.obj["config_path"])
    sync_cfg = config.sync
    incremental = sync_cfg.default_incremental_max_new
    page_size = sync_cfg.incremental_bookmarks_page_size

    click.echo("[auth]")
    click.echo(f"access_token = {mask_secret(config.auth.access_token)}")
    click.echo(f"user_id = {config.auth.user_id or '(lookup via /2/users/me)'}")
    click.echo("[sync]")
    click.echo(f"default_initial_max_new = {sync_cfg.default_initial_max_new}")
    click.echo(f"default_incremental_max_new = {'all' if incremental is None else incremental}")
    click.echo(f"quote_resolve_max_depth = {sync_cfg.quote_depth}")
    click.echo(f"known_boundary_threshold = {sync_cfg.known_boundary_threshold}")
    click.echo(f"incremental_bookmarks_page_size = {page_size if page_size else '(auto)'}")
    click.echo("[cost]")
    click.echo(f"unit_price_post_read_usd = {config.cost.unit_price_post_read_usd}")
    click.echo(f"unit_price_user_read_usd = {config.cost.unit_price_user_read_usd}")
    click.echo("[storage]")
    click.echo(f"data_dir = {config.data_dir}")
