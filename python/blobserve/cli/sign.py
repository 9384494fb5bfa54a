"""
blobserve sign command - Mint a presigned URL without a running server.

Usage:
    blobserve sign reports/q3.pdf --expiry 1h --permission read --secret ./secret
"""

import sys

import click

from ..config import load_config
from ..errors import ConfigError
from ..signing import Permission, SignedURL, parse_duration, to_url


@click.command()
@click.argument("path", required=True)
@click.option("--expiry", "expiry_length", default="1h", show_default=True, help="Lifetime, e.g. 30s, 10m, 1h30m")
@click.option("--permission", type=click.Choice([p.value for p in Permission]), default=None,
              help="Restrict the URL to reading or writing (default: both)")
@click.option("--secret", "secret_file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="File holding the signing secret")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Server configuration file")
@click.option("--base-url", default="", help="Server address to prefix the URL with")
def sign_command(path, expiry_length, permission, secret_file, config_path, base_url):
    """Print a presigned URL for PATH, relative to the storage root.

    The secret must match the running server's for the URL to verify.
    """
    try:
        lifetime = parse_duration(expiry_length)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--expiry")

    try:
        cfg = load_config(config_path)
        secret = cfg.load_secret(secret_file=secret_file)
    except ConfigError as e:
        click.echo(f"[blobserve] Error: {e}", err=True)
        sys.exit(1)

    claims = SignedURL.create(path, lifetime, Permission(permission) if permission else None)
    click.echo(base_url.rstrip("/") + to_url(secret, claims))
