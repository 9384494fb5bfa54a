"""
Integration tests for the object server across restarts.
"""

import os

import pytest
from fastapi.testclient import TestClient
from blobserve.api_server import EventBroker, create_app
from blobserve.objects import MetadataStore, StoreState


SECRET = b"integration-secret"


def start(root):
    """Build an app over a fresh store instance, as the server does on boot."""
    store = MetadataStore(os.path.join(root, "_db"))
    app = create_app(store, SECRET, root, broker=EventBroker())
    return store, app


@pytest.mark.integration
class TestObjectLifecycle:
    """Upload, mutate, sign and restart flows through the HTTP API."""

    @pytest.mark.p0
    def test_lifespan_initializes_and_closes_store(self, temp_dir):
        store, app = start(temp_dir)
        assert store.state is StoreState.UNINITIALIZED

        with TestClient(app) as client:
            assert store.state is StoreState.READY
            assert client.get("/health").json()["state"] == "ready"

        assert store.state is StoreState.CLOSED

    @pytest.mark.p0
    def test_objects_survive_restart(self, temp_dir):
        """Test that the index is rebuilt from the log after a restart."""
        store, app = start(temp_dir)
        with TestClient(app) as client:
            # 1. Upload two objects and copy one
            a = client.post("/objects/", files={"file": ("a.txt", b"alpha", "text/plain")}).json()["id"]
            b = client.post("/objects/", files={"file": ("b.txt", b"beta", "text/plain")}).json()["id"]
            copy = client.post(f"/objects/{a}/copy").json()["id"]

            # 2. Append to one, delete the other
            client.patch(f"/objects/{a}", content=b"!")
            assert client.delete(f"/objects/{b}").status_code == 200

            # 3. Presigned upload
            url = client.post("/pre-signed", json={"path": "c.txt", "expiryLength": "1h"}).json()["url"]
            c = client.put(url, content=b"gamma").json()["id"]

        store, app = start(temp_dir)
        with TestClient(app) as client:
            listed = {r["id"] for r in client.get("/objects/").json()}
            assert listed == {a, copy, c}

            assert client.get(f"/objects/{a}").content == b"alpha!"
            assert client.get(f"/objects/{copy}").content == b"alpha"
            assert client.get(f"/objects/{b}").status_code == 404

            # Tokens are stateless, so the URL still works with the same secret
            assert client.get(url).content == b"gamma"

    @pytest.mark.p1
    def test_secret_rotation_invalidates_urls(self, temp_dir):
        store, app = start(temp_dir)
        with TestClient(app) as client:
            url = client.post("/pre-signed", json={"path": "a.txt", "expiryLength": "1h"}).json()["url"]

        store = MetadataStore(os.path.join(temp_dir, "_db"))
        app = create_app(store, b"rotated", temp_dir)
        with TestClient(app) as client:
            response = client.put(url, content=b"x")

        assert response.status_code == 400
        assert response.json() == {"error": "invalid signature"}

    @pytest.mark.p1
    def test_name_reusable_after_delete(self, temp_dir):
        store, app = start(temp_dir)
        with TestClient(app) as client:
            first = client.post("/objects/", files={"file": ("a.txt", b"1", "text/plain")}).json()["id"]
            client.delete(f"/objects/{first}")
            response = client.post("/objects/", files={"file": ("a.txt", b"2", "text/plain")})

            assert response.status_code == 201
            assert response.json()["id"] != first
