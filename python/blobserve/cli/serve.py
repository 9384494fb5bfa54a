"""
blobserve serve command - Run the object server.

Usage:
    blobserve serve --config ./config.yaml
    blobserve serve --path /var/lib/blobserve --secret /etc/blobserve/secret
    blobserve serve --path ./data --generate-secret --port 9000
"""

import logging
import sys

import click
import uvicorn

from ..api_server import EventBroker, create_app
from ..config import LOG_LEVELS, load_config
from ..errors import ConfigError, CorruptLogError
from ..objects import MetadataStore


@click.command()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Server configuration file (YAML or JSON)")
@click.option("--host", type=str, default=None, help="Bind host (default: 0.0.0.0)")
@click.option("--port", type=int, default=None, help="Bind port (default: 8080)")
@click.option("--path", "storage_path", type=str, default=None, help="Storage root directory")
@click.option("--secret", "secret_file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="File holding the signing secret; overrides secret_path from the config")
@click.option("--generate-secret", is_flag=True, help="Ignore configured secrets and generate one from os.urandom")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default=None, help="Log level (default: info)")
def serve_command(config_path, host, port, storage_path, secret_file, generate_secret, log_level):
    """Start the blobserve object server.

    The object log under the storage root is replayed before the server
    starts accepting requests.

    Example:
        blobserve serve --path ./data --secret ./secret --port 8080
    """
    try:
        cfg = load_config(
            config_path,
            host=host,
            port=port,
            path=storage_path,
            log_level=log_level,
        )
        secret = cfg.load_secret(secret_file=secret_file, generate=generate_secret)
    except ConfigError as e:
        click.echo(f"[blobserve] Error: {e}", err=True)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = MetadataStore(cfg.log_path)
    try:
        store.initialize()
    except CorruptLogError as e:
        click.echo(f"[blobserve] Error: {e}", err=True)
        sys.exit(1)

    app = create_app(
        store,
        secret,
        cfg.path,
        broker=EventBroker(history_size=cfg.event_history),
        max_upload_size=cfg.max_upload_size,
    )

    click.echo("Starting blobserve:")
    click.echo(f"  Storage root: {cfg.path}")
    click.echo(f"  Object log: {cfg.log_path}")
    click.echo(f"  Objects: {len(store.list())}")
    click.echo(f"  Listening: {cfg.host}:{cfg.port}")
    if generate_secret:
        click.echo("  Secret: generated (presigned URLs will not survive a restart)")
    click.echo()

    uvicorn.run(
        app,
        host=cfg.host,
        port=cfg.port,
        log_level=cfg.log_level,
    )
