"""Tests for the bakeform HTTP API."""

import pytest
import pytest_asyncio

from pi_bakery.web import server


# ==============================================================================
# Test Fixtures
# ==============================================================================


@pytest_asyncio.fixture
async def client(aiohttp_client, inventory):
    return await aiohttp_client(server.create_app(inventory))


# ==============================================================================
# Listing
# ==============================================================================


class TestList:
    @pytest.mark.asyncio
    async def test_empty_inventory(self, client):
        response = await client.get("/")

        assert response.status == 200
        assert await response.json() == {}
        assert response.headers["Cache-Control"].startswith("no-cache")

    @pytest.mark.asyncio
    async def test_lists_loaded_bakeforms(self, client, inventory, make_image):
        make_image("raspios")
        inventory.load()

        response = await client.get("/")

        payload = await response.json()
        assert list(payload) == ["raspios"]
        assert payload["raspios"]["mounted"] is False
        assert payload["raspios"]["busy"] is False
        assert payload["raspios"]["location"].endswith("raspios.img")

    @pytest.mark.asyncio
    async def test_post_to_root_is_not_allowed(self, client):
        response = await client.post("/", data=b"x")

        assert response.status == 405


# ==============================================================================
# Upload
# ==============================================================================


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_creates_bakeform(self, client, image_folder, file_backend):
        response = await client.post("/raspios", data=b"\x00image\x00" * 1024)

        assert response.status == 201
        payload = await response.json()
        assert payload["name"] == "raspios"
        assert (image_folder / "raspios.img").read_bytes() == b"\x00image\x00" * 1024
        assert [name for _, name in file_backend.copies] == ["raspios"]

    @pytest.mark.asyncio
    async def test_duplicate_upload_is_forbidden(self, client, make_image, inventory):
        existing = make_image("raspios", b"original")
        inventory.load()

        response = await client.post("/raspios", data=b"replacement")

        assert response.status == 403
        assert "already exists" in await response.text()
        assert existing.read_bytes() == b"original"

    @pytest.mark.asyncio
    async def test_invalid_name_is_rejected(self, client, image_folder):
        response = await client.post("/.hidden", data=b"x")

        assert response.status == 400
        assert list(image_folder.iterdir()) == []

    @pytest.mark.asyncio
    async def test_copy_failure_returns_500(self, client, file_backend, image_folder):
        file_backend.fail = True

        response = await client.post("/raspios", data=b"x")

        assert response.status == 500
        assert "disk full" in await response.text()
        assert not (image_folder / "raspios.img").exists()


# ==============================================================================
# Delete
# ==============================================================================


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_unknown_returns_404(self, client):
        response = await client.delete("/ghost")

        assert response.status == 404
        assert await response.text() == "Bakeform not found"

    @pytest.mark.asyncio
    async def test_delete_removes_bakeform(self, client, inventory, make_image):
        image = make_image("raspios")
        inventory.load()

        response = await client.delete("/raspios")

        assert response.status == 200
        assert await response.text() == ""
        assert not image.exists()
        assert "raspios" not in inventory.list()

    @pytest.mark.asyncio
    async def test_delete_failure_returns_500(self, client, inventory, make_image, mocker):
        make_image("raspios")
        inventory.load()
        mocker.patch(
            "pi_bakery.storage.bakeform.shutil.rmtree",
            side_effect=PermissionError("read-only file system"),
        )

        response = await client.delete("/raspios")

        assert response.status == 500
        assert "read-only file system" in await response.text()


# ==============================================================================
# Server Lifecycle
# ==============================================================================


class TestServerLifecycle:
    def test_stop_without_server(self):
        assert server.stop_server() is False
        assert server.is_running() is False

    def test_start_and_stop(self, inventory, unused_tcp_port):
        handle = server.start_server(inventory, host="127.0.0.1", port=unused_tcp_port)
        try:
            assert server.is_running()
            assert server.start_server(inventory) is handle
        finally:
            assert server.stop_server() is True

        assert not handle.thread.is_alive()
        assert server.is_running() is False
