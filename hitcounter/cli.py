# hitcounter/cli.py
import json
from pathlib import Path

import click
from flask import current_app
from flask.cli import with_appcontext

from hitcounter.buckets import parse_types
from hitcounter.errors import StoreError
from hitcounter.gate import RequestContext, resolve_client_ip
from hitcounter.recorder import get_hit_counter
from hitcounter.schema import FAILED, ensure_schema


def _types_option(value):
    try:
        return parse_types(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.command("hits-init")
@with_appcontext
def hits_init_cmd():
    """Create missing hit tables, columns and constraints."""
    outcomes = ensure_schema(get_hit_counter().store)
    for o in outcomes:
        line = f"{o.status:<8} {o.table}.{o.item}"
        if o.error:
            line += f"  ({o.error})"
        click.echo(line)
    if any(o.status == FAILED for o in outcomes):
        raise click.exceptions.Exit(1)


@click.command("hits-record")
@click.argument("url")
@click.option("--types", "types", default="all", help="daily,weekly,monthly,yearly or all")
@click.option("--ip", default=None, help="client address; unknown addresses only count in test mode")
@click.option("--user-agent", default="", help="client User-Agent string")
@with_appcontext
def hits_record_cmd(url, types, ip, user_agent):
    """Record one hit for URL."""
    ctx = RequestContext.build(ip_address=resolve_client_ip({}, ip), user_agent=user_agent)
    try:
        result = get_hit_counter().record(url, ctx, _types_option(types))
    except StoreError as e:
        raise click.ClickException(str(e))
    if not result.counted:
        current_app.logger.info("hit on %s was not counted (allow-gate)", url)
    click.echo(json.dumps(result.as_dict()))


@click.command("hits-report")
@click.option("--url", default=None)
@click.option("--from", "from_time", type=int, default=None, help="unix seconds")
@click.option("--to", "to_time", type=int, default=None, help="unix seconds")
@click.option("--types", "types", default="all")
@with_appcontext
def hits_report_cmd(url, from_time, to_time, types):
    """Print view / unique view totals as JSON."""
    try:
        totals = get_hit_counter().report(url, from_time, to_time, _types_option(types))
    except StoreError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(totals.as_dict()))


@click.command("hits-export")
@click.option("--types", "types", default="daily", help="which finished buckets to export")
@click.option("--path", "path", default=None, help="sink file; one file per type is written next to it")
@click.option("--delete", "delete_after", is_flag=True, help="remove exported rows from the store")
@with_appcontext
def hits_export_cmd(types, path, delete_after):
    """Export the previous day/week/month/year of hits to JSON."""
    if not path:
        base = current_app.config.get("HIT_COUNTER_EXPORT_DIR") or Path(current_app.instance_path) / "exports"
        path = str(Path(base) / "hits.json")
    try:
        ok = get_hit_counter().save_hits(path, _types_option(types), delete_after)
    except StoreError as e:
        raise click.ClickException(str(e))
    if not ok:
        raise click.ClickException(f"export to {path} failed")
    click.echo(f"exported to {path}")


def register_cli(app):
    app.cli.add_command(hits_init_cmd)
    app.cli.add_command(hits_record_cmd)
    app.cli.add_command(hits_report_cmd)
    app.cli.add_command(hits_export_cmd)
