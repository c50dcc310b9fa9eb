#!/usr/bin/env python3
"""Command line for the billing automation (cron entry point).

Usage:
    python billing_cli.py run-daily
    python billing_cli.py run-daily --date 2026-03-01
    python billing_cli.py status
    python billing_cli.py renew 42
    python billing_cli.py settings --set gracePeriodDays=5
"""

from __future__ import annotations

import json
import sys
from typing import Optional

import click

from exceptions import BillingError
from utils import parse_date, start_of_day, utc_now


def get_app_context():
    """Get Flask application context."""
    from app import create_app
    app = create_app()
    return app.app_context()


def _fail(error: Exception):
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Click CLI Group
# ---------------------------------------------------------------------------

@click.group()
def cli():
    """Subscription billing automation tools."""
    pass


@cli.command("run-daily")
@click.option("--date", "run_date", help="Run as of this day (YYYY-MM-DD, noon UTC)")
def run_daily(run_date: Optional[str]):
    """Run the daily billing automation once."""
    clock = None
    if run_date:
        day = parse_date(run_date)
        if day is None:
            _fail(f"Invalid date {run_date!r}")
        moment = start_of_day(day).replace(hour=12)
        clock = lambda: moment  # noqa: E731

    with get_app_context():
        from services.automation import build_engine

        try:
            report = build_engine(clock).run_daily(triggered_by="cli")
        except BillingError as e:
            _fail(e)
        click.echo(json.dumps(report.to_dict(), indent=2))
        if report.errors:
            click.echo(f"{len(report.errors)} item(s) failed", err=True)
            sys.exit(2)


@cli.command()
def status():
    """Show the last run and today's pending work."""
    with get_app_context():
        from services.automation import build_engine

        click.echo(json.dumps(build_engine().automation_status(), indent=2))


@cli.command()
@click.argument("subscription_id", type=int)
@click.option("--by", "performed_by", default="cli", help="Operator name for the log")
def renew(subscription_id: int, performed_by: str):
    """Renew one subscription by a billing cycle."""
    with get_app_context():
        from services.subscriptions import renew_subscription

        try:
            sub = renew_subscription(subscription_id, performed_by=performed_by, now=utc_now())
        except BillingError as e:
            _fail(e)
        click.echo(f"Subscription {sub.subscription_code} renewed until {sub.end_date:%Y-%m-%d}")


@cli.command()
@click.option("--set", "assignments", multiple=True, metavar="KEY=VALUE",
              help="Persist an automation setting (e.g. renewalAlertDays=30,7,1)")
@click.option("--by", "updated_by", default="cli", help="Operator name")
def settings(assignments: tuple, updated_by: str):
    """Show or change the automation settings."""
    with get_app_context():
        from services.settings import get_automation_config, update_automation_settings

        try:
            if assignments:
                changes = {}
                for item in assignments:
                    key, sep, value = item.partition("=")
                    if not sep:
                        raise click.BadParameter(f"expected KEY=VALUE, got {item!r}")
                    changes[key.strip()] = value.strip()
                config = update_automation_settings(changes, updated_by=updated_by)
            else:
                config = get_automation_config()
        except BillingError as e:
            _fail(e)
        click.echo(json.dumps(config.to_dict(), indent=2))


if __name__ == "__main__":
    cli()
