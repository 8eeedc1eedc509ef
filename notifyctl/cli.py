import json
import logging
import click

from .db import init_db, connect_db
from .config import db_path
from .importer import import_batch, read_rows
from .repository import (
    enqueue_job, list_jobs, counts, batch_stats,
    get_config, set_config
)
from .delivery import WhatsAppClient
from .worker import Dispatcher, start_dispatcher


def _conn(ctx):
    return connect_db(ctx.obj["db"])


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


@click.group(help="notifyctl — scheduled WhatsApp notification dispatcher")
@click.option("--db", "db_file", default=None, envvar="NOTIFYCTL_DB",
              help="SQLite database file [default: notify.db]")
@click.option("--log-level", default="WARNING", envvar="NOTIFYCTL_LOG_LEVEL", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_file, log_level):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)-7s %(name)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db"] = db_file or db_path()
    # Ensure DB/schema exist before any command runs
    init_db(ctx.obj["db"])


# ---------- Enqueue ----------
@cli.command("enqueue", help="Schedule one notification")
@click.option("--to", "recipient", required=True, help="Recipient phone number")
@click.option("--name", "display_name", required=True, help="Name substituted into the template")
@click.option("--delay", "delay_minutes", default=None, type=int,
              help="Minutes from now (default from config; negative means now)")
@click.pass_context
def enqueue_cmd(ctx, recipient, display_name, delay_minutes):
    conn = _conn(ctx)
    try:
        job_id, scheduled_for = enqueue_job(
            conn,
            recipient=recipient,
            display_name=display_name,
            delay_minutes=delay_minutes,
        )
        click.secho(f"Enqueued job {job_id} for {scheduled_for}", fg="green", err=True)
        click.echo(json.dumps({"job_id": job_id, "scheduled_for": scheduled_for}))
    except (ValueError, RuntimeError) as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Import ----------
@cli.command("import", help="Schedule one notification per row of a CSV or JSON file")
@click.argument("path", type=click.Path(dir_okay=False))
@click.option("--delay", "delay_minutes", default=None, type=int,
              help="Minutes from now for the whole batch")
@click.pass_context
def import_cmd(ctx, path, delay_minutes):
    conn = _conn(ctx)
    try:
        rows = read_rows(path)
        result = import_batch(conn, rows, delay_minutes=delay_minutes)
    except (ValueError, RuntimeError) as e:
        _fail(e)
    finally:
        conn.close()

    color = "green" if not result["errors"] else "yellow"
    click.secho(
        f"Batch {result['batch_id']}: {result['inserted']}/{result['total']} scheduled "
        f"for {result['scheduled_for']} ({result['errors']} errors)",
        fg=color, err=True,
    )
    click.echo(json.dumps(result, indent=2, ensure_ascii=False, default=str))


# ---------- Jobs ----------
@cli.command("list")
@click.option("--batch", "batch_id", default=None, help="Only jobs of this batch")
@click.option("--limit", default=100, show_default=True, type=int, help="Newest N jobs when no batch given")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_context
def list_cmd(ctx, batch_id, limit, as_json):
    conn = _conn(ctx)
    try:
        jobs = list_jobs(conn, batch_id=batch_id, limit=limit)
    finally:
        conn.close()

    if as_json:
        click.echo(json.dumps([j.to_dict() for j in jobs], indent=2, ensure_ascii=False))
        return

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id:>6} | {j.status:<7} | to={j.recipient} | name={j.display_name} "
            f"| due={j.due_at} | sent={j.sent_at} | batch={j.batch_id} | last_error={j.last_error}"
        )


@cli.command("stats", help="Counts per status for one batch")
@click.argument("batch_id")
@click.pass_context
def stats_cmd(ctx, batch_id):
    conn = _conn(ctx)
    try:
        click.echo(json.dumps(batch_stats(conn, batch_id), indent=2))
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("status", help="Counts per status for all jobs")
@click.pass_context
def status_cmd(ctx):
    conn = _conn(ctx)
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


# ---------- Dispatcher ----------
@cli.command("tick", help="Dispatch due jobs once, now")
@click.pass_context
def tick_cmd(ctx):
    conn = _conn(ctx)
    try:
        cfg = get_config(conn)
    finally:
        conn.close()

    client = WhatsAppClient.from_env(cfg)
    try:
        report = Dispatcher(client.deliver, db_file=ctx.obj["db"]).tick()
    except RuntimeError as e:
        _fail(e)

    if report is None:
        click.secho("Another tick is in progress; nothing done.", fg="yellow")
        return
    click.echo(json.dumps(report.to_dict(), indent=2))


@cli.group("dispatcher", help="Run the periodic dispatcher")
def dispatcher_group():
    pass


@dispatcher_group.command("start")
@click.option("--interval", type=int, default=None, help="Seconds between ticks (default from config)")
@click.pass_context
def dispatcher_start(ctx, interval):
    click.secho("Starting dispatcher. Press Ctrl+C to stop…", fg="cyan")
    start_dispatcher(interval=interval, db_file=ctx.obj["db"])
    click.secho("Dispatcher stopped.", fg="yellow")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = _conn(ctx)
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = _conn(ctx)
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli(obj={})
