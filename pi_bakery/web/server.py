"""HTTP API for listing, uploading and deleting bakeforms.

Routes:
    GET    /        -> 200, JSON mapping of name -> bakeform summary
    POST   /{name}  -> 201 with the created bakeform, 403 if it exists
    DELETE /{name}  -> 200, 404 if unknown

Inventory operations block on OS mounts and copies, so every handler hands
them to the loop's thread-pool executor.
"""

from __future__ import annotations

import asyncio
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from aiohttp import web

from pi_bakery.config.settings import DEFAULT_HOST, DEFAULT_PORT
from pi_bakery.logging import LoggerFactory
from pi_bakery.storage.exceptions import (
    BakeformConflictError,
    BakeformNotFoundError,
    BakeryError,
    InvalidBakeformNameError,
)
from pi_bakery.storage.inventory import BakeformInventory


T = TypeVar("T")

INVENTORY_KEY: web.AppKey[BakeformInventory] = web.AppKey(
    "inventory", BakeformInventory
)


@dataclass
class ServerHandle:
    runner: web.AppRunner
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop

    def stop(self, timeout: float = 5.0) -> None:
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)


_current_handle: ServerHandle | None = None


class RequestBodyStream:
    """Blocking file-like view of a request body for executor threads.

    Each ``read`` schedules the async read on the server loop and waits for
    it, so the body streams straight into the image file.
    """

    def __init__(self, content: Any, loop: asyncio.AbstractEventLoop):
        self._content = content
        self._loop = loop

    def read(self, size: int = -1) -> bytes:
        future = asyncio.run_coroutine_threadsafe(
            self._content.read(size), self._loop
        )
        return future.result()


def _build_headers() -> dict[str, str]:
    return {
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
    }


def _error_response(status: int, error: BaseException | str) -> web.Response:
    return web.Response(status=status, text=str(error), headers=_build_headers())


async def _run_blocking(func: Callable[..., T], *args: Any) -> T:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


async def handle_list(request: web.Request) -> web.Response:
    inventory = request.app[INVENTORY_KEY]
    content = await _run_blocking(inventory.list)
    payload = {name: bakeform.to_dict() for name, bakeform in content.items()}
    return web.json_response(payload, headers=_build_headers())


async def handle_upload(request: web.Request) -> web.Response:
    log = LoggerFactory.for_web()
    name = request.match_info["name"]
    inventory = request.app[INVENTORY_KEY]
    stream = RequestBodyStream(request.content, asyncio.get_running_loop())

    try:
        bakeform = await _run_blocking(inventory.upload, name, stream)
    except InvalidBakeformNameError as exc:
        log.warning(f"Rejected upload: {exc}")
        return _error_response(400, exc)
    except BakeformConflictError as exc:
        log.warning(f"Error creating image file: {exc}")
        return _error_response(403, exc)
    except (BakeryError, OSError) as exc:
        log.error(f"Error saving or loading image {name}: {exc}")
        return _error_response(500, exc)

    return web.json_response(bakeform.to_dict(), status=201, headers=_build_headers())


async def handle_delete(request: web.Request) -> web.Response:
    log = LoggerFactory.for_web()
    name = request.match_info["name"]
    inventory = request.app[INVENTORY_KEY]

    try:
        await _run_blocking(inventory.delete, name)
    except BakeformNotFoundError:
        return _error_response(404, "Bakeform not found")
    except (BakeryError, OSError) as exc:
        log.error(f"Error deleting bakeform {name}: {exc}")
        return _error_response(500, exc)

    return web.Response(status=200, headers=_build_headers())


@web.middleware
async def access_log_middleware(request: web.Request, handler):
    log = LoggerFactory.for_web()
    response = await handler(request)
    log.debug(
        f"{request.method} {request.path} -> {response.status}",
        tags=["web", "access"],
    )
    return response


def create_app(inventory: BakeformInventory) -> web.Application:
    app = web.Application(middlewares=[access_log_middleware])
    app[INVENTORY_KEY] = inventory
    app.router.add_get("/", handle_list)
    app.router.add_post("/{name}", handle_upload)
    app.router.add_delete("/{name}", handle_delete)
    return app


def is_running() -> bool:
    return _current_handle is not None and _current_handle.thread.is_alive()


def stop_server(timeout: float = 5.0) -> bool:
    global _current_handle
    handle = _current_handle
    if handle is None:
        return False
    handle.stop(timeout=timeout)
    _current_handle = None
    return True


def start_server(
    inventory: BakeformInventory,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
) -> ServerHandle:
    """Serve the inventory API from a background thread."""
    global _current_handle
    if is_running():
        return _current_handle
    runner_queue: queue.Queue[
        tuple[str, BaseException | tuple[web.AppRunner, asyncio.AbstractEventLoop]]
    ] = queue.Queue(maxsize=1)

    def run_app() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        app = create_app(inventory)

        async def start_site() -> web.AppRunner:
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, host, port)
            await site.start()
            return runner

        try:
            runner = loop.run_until_complete(start_site())
        except Exception as exc:
            runner_queue.put(("error", exc))
            loop.close()
            return
        runner_queue.put(("ok", (runner, loop)))
        log = LoggerFactory.for_web()
        log.info(f"Web server started at http://{host}:{port}")
        try:
            loop.run_forever()
        finally:
            log.debug("Web server shutting down...")
            loop.run_until_complete(runner.cleanup())
            loop.close()
            log.info("Web server stopped")

    thread = threading.Thread(target=run_app, daemon=True)
    thread.start()
    try:
        status, payload = runner_queue.get(timeout=5)
    except queue.Empty as exc:
        raise TimeoutError("Web server failed to start within timeout.") from exc
    if status == "error":
        if isinstance(payload, BaseException):
            raise payload
        raise RuntimeError("Web server failed to start with an unknown error.")
    if not isinstance(payload, tuple):
        raise RuntimeError("Web server startup returned invalid payload.")
    runner, loop = payload
    handle = ServerHandle(runner=runner, thread=thread, loop=loop)
    _current_handle = handle
    return handle
