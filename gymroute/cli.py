import click
from flask import current_app

from . import db
from .settlement import reconcile_payments
from .store import LedgerStore
from .webhooks import replay_pending_events


def register_commands(app):
    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo("database initialised")

    @app.cli.command("reconcile-payments")
    @click.option("--grace-minutes", type=int, default=None)
    def reconcile_payments_command(grace_minutes):
        """Complete successful payments that have no subscription."""
        if grace_minutes is None:
            grace_minutes = current_app.config["RECONCILE_GRACE_MINUTES"]
        completed = reconcile_payments(LedgerStore(db.session), grace_minutes=grace_minutes)
        click.echo(f"completed {len(completed)} payment(s)")
        for payment_id in completed:
            click.echo(f"  {payment_id}")

    @app.cli.command("replay-webhooks")
    @click.option("--limit", type=int, default=100)
    def replay_webhooks_command(limit):
        """Re-dispatch logged webhook events that were never processed."""
        done, failed = replay_pending_events(LedgerStore(db.session), limit=limit)
        click.echo(f"replayed {done} event(s), {failed} failed")
