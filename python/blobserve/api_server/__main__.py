#!/usr/bin/env python3
"""
blobserve API Server - Entry Point

Usage:
    python -m blobserve.api_server --path ./data --secret ./secret
    python -m blobserve.api_server --config ./config.yaml --port 8080
"""

from ..cli.serve import serve_command


def main():
    serve_command(prog_name="python -m blobserve.api_server")


if __name__ == "__main__":
    main()
