"""
blobserve CLI - Command line interface for blobserve.

Usage:
    blobserve serve --config config.yaml          # Run the object server
    blobserve sign notes/a.txt --expiry 10m       # Mint a presigned URL offline
"""

import click
from .serve import serve_command
from .sign import sign_command


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """blobserve - object storage with presigned URLs."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Add subcommands
cli.add_command(serve_command, name="serve")
cli.add_command(sign_command, name="sign")


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
