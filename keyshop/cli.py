"""Flask CLI commands for local pool management"""
import json
import os

import click

from keyshop.services.key_pool import generate_offline_key


def register_commands(app):

    @app.cli.command('generate-pool')
    @click.option('--count', default=100, show_default=True, help='Number of keys to generate')
    @click.option('--output', default=None, help='Pool file path (defaults to KEYS_LOCAL_PATH)')
    @click.option('--force', is_flag=True, help='Overwrite an existing pool file')
    def generate_pool(count, output, force):
        """Write a pool of offline-generated keys for development."""
        path = output or app.config['KEYS_LOCAL_PATH']
        if os.path.exists(path) and not force:
            raise click.ClickException(f"Pool file {path} already exists, use --force to overwrite")

        keys = set()
        while len(keys) < count:
            keys.add(generate_offline_key())

        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump({'keys': sorted(keys)}, f, indent=2)
        click.echo(f"Wrote {count} keys to {path}")

    @app.cli.command('pool-status')
    def pool_status():
        """Show pool size, issued and deactivated counts."""
        services = app.extensions['keyshop']
        pool = services.pool.load_pool()
        issued = services.pool.issued_keys()
        available = [k for k in pool if k not in issued]
        click.echo(f"Pool: {len(pool)} keys")
        click.echo(f"Issued: {len(issued)}")
        click.echo(f"Deactivated: {len(services.ledger.deactivated.members())}")
        click.echo(f"Available: {len(available)}")
