"""
Unit tests for the blobserve command line.
"""

import os
from urllib.parse import urlparse

import pytest
from click.testing import CliRunner

import blobserve.cli.serve as serve_module
from blobserve.cli import cli
from blobserve.config import SECRET_ENV
from blobserve.signing import URL_PREFIX, Permission, decode_token


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.delenv(SECRET_ENV, raising=False)
    return CliRunner()


@pytest.fixture
def secret_file(temp_dir):
    path = os.path.join(temp_dir, "secret")
    with open(path, "wb") as f:
        f.write(b"testing\n")
    return path


@pytest.fixture
def fake_uvicorn(monkeypatch):
    calls = []

    def run(app, **kwargs):
        calls.append((app, kwargs))

    monkeypatch.setattr(serve_module.uvicorn, "run", run)
    return calls


class TestCliGroup:

    @pytest.mark.p2
    def test_help_without_command(self, runner):
        result = runner.invoke(cli, [])

        assert result.exit_code == 0
        assert "serve" in result.output
        assert "sign" in result.output


class TestSignCommand:
    """Tests for `blobserve sign`."""

    @pytest.mark.p0
    def test_sign_prints_verifiable_url(self, runner, secret_file):
        result = runner.invoke(cli, [
            "sign", "reports/q3.pdf",
            "--expiry", "10m",
            "--permission", "read",
            "--secret", secret_file,
            "--base-url", "http://localhost:8080/",
        ])

        assert result.exit_code == 0, result.output
        url = urlparse(result.output.strip())
        assert url.netloc == "localhost:8080"
        assert url.path.startswith(URL_PREFIX)

        claims = decode_token(b"testing", url.path[len(URL_PREFIX):])
        assert claims.path == "reports/q3.pdf"
        assert claims.permission is Permission.READ
        assert not claims.is_expired()

    @pytest.mark.p1
    def test_sign_bad_expiry(self, runner, secret_file):
        result = runner.invoke(cli, ["sign", "a.txt", "--expiry", "later", "--secret", secret_file])

        assert result.exit_code == 2
        assert "--expiry" in result.output

    @pytest.mark.p1
    def test_sign_without_secret(self, runner):
        result = runner.invoke(cli, ["sign", "a.txt"])

        assert result.exit_code == 1
        assert "No signing secret" in result.output


class TestServeCommand:
    """Tests for `blobserve serve`."""

    @pytest.mark.p0
    def test_serve_replays_and_starts(self, runner, temp_dir, secret_file, fake_uvicorn):
        data = os.path.join(temp_dir, "data")
        result = runner.invoke(cli, [
            "serve", "--path", data, "--secret", secret_file,
            "--host", "127.0.0.1", "--port", "9000",
        ])

        assert result.exit_code == 0, result.output
        assert "Listening: 127.0.0.1:9000" in result.output
        assert os.path.exists(os.path.join(data, "_db"))

        assert len(fake_uvicorn) == 1
        app, kwargs = fake_uvicorn[0]
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["port"] == 9000
        assert app.state.root == data

    @pytest.mark.p0
    def test_serve_without_secret(self, runner, temp_dir, fake_uvicorn):
        result = runner.invoke(cli, ["serve", "--path", temp_dir])

        assert result.exit_code == 1
        assert "No signing secret" in result.output
        assert fake_uvicorn == []

    @pytest.mark.p1
    def test_serve_generated_secret(self, runner, temp_dir, fake_uvicorn):
        result = runner.invoke(cli, ["serve", "--path", temp_dir, "--generate-secret"])

        assert result.exit_code == 0, result.output
        assert "Secret: generated" in result.output

    @pytest.mark.p0
    def test_serve_corrupt_log(self, runner, temp_dir, secret_file, fake_uvicorn):
        with open(os.path.join(temp_dir, "_db"), "w") as f:
            f.write("ADD one {broken\n")

        result = runner.invoke(cli, ["serve", "--path", temp_dir, "--secret", secret_file])

        assert result.exit_code == 1
        assert "corrupt" in result.output
        assert fake_uvicorn == []

    @pytest.mark.p1
    def test_serve_config_file(self, runner, temp_dir, secret_file, fake_uvicorn):
        config = os.path.join(temp_dir, "config.yaml")
        with open(config, "w") as f:
            f.write(f"path: {temp_dir}\nsecretPath: {secret_file}\nport: 9100\n")

        result = runner.invoke(cli, ["serve", "--config", config, "--port", "9200"])

        assert result.exit_code == 0, result.output
        assert fake_uvicorn[0][1]["port"] == 9200
