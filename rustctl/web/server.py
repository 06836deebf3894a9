import asyncio
import logging
import threading
from typing import Optional
from hypercorn.config import Config
from hypercorn.asyncio import serve
from rustctl.game.snapshot import SharedState
from rustctl.web.setup import create_app

log = logging.getLogger(__name__)


class DashboardServer:
    """
    Serves the dashboard with Hypercorn on its own event loop in a daemon thread,
    so the (blocking) lifecycle workflow keeps the main thread.
    """

    def __init__(self, shared: SharedState, host: str, port: int, sync_interval: float = 0.2):
        self.app = create_app(shared, sync_interval)
        self.config = Config()
        self.config.bind = [f"{host}:{port}"]
        self.config.accesslog = None
        self.config.graceful_timeout = 1.0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown: Optional[asyncio.Event] = None
        self._thread = threading.Thread(target=self._run, daemon=True, name="DashboardServerThread")

    def start(self) -> None:
        log.info(f"Starting dashboard on http://{self.config.bind[0]}")
        self._thread.start()

    def stop(self) -> None:
        if self._loop is not None and self._shutdown is not None:
            self._loop.call_soon_threadsafe(self._shutdown.set)
        if self._thread.is_alive():
            self._thread.join(timeout=5)

    def _run(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._shutdown = asyncio.Event()
        try:
            self._loop.run_until_complete(serve(self.app, self.config, shutdown_trigger=self._shutdown.wait))
        except OSError as e:
            log.error(f"Dashboard server failed: {e}")
        finally:
            self._loop.close()
            log.info("Dashboard server stopped.")
