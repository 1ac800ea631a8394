"""Main entry point - runs the forwarder and, optionally, the status API."""

import asyncio
import logging
import signal
import sys
from typing import Optional

import uvicorn

from usdc_forwarder.chain.base import ChainClient
from usdc_forwarder.chain.factory import get_chain_clients
from usdc_forwarder.config import ConfigurationError, Settings, get_settings
from usdc_forwarder.ledger.database import close_db, get_db, init_db
from usdc_forwarder.watcher.orchestrator import ForwarderService

logger = logging.getLogger(__name__)


class Application:
    """Main application that runs the forwarder service and status API."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.service: Optional[ForwarderService] = None
        self.clients: dict[str, ChainClient] = {}
        self.api_server: Optional[uvicorn.Server] = None
        self._shutdown_event = asyncio.Event()

    def configure_logging(self) -> None:
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)

    async def setup(self) -> None:
        """Validate configuration and initialize every component.

        Raises:
            ConfigurationError: If required settings are missing or malformed
        """
        self.settings.validate_required()

        logger.info("Starting USDC forwarder...")
        logger.info(f"Environment: {self.settings.environment}")
        logger.info(f"Escrow contract: {self.settings.contract_address}")

        profiles = self.settings.get_network_profiles()

        db = None
        if self.settings.persist_state:
            await init_db()
            logger.info("Database initialized")
            db = get_db
        else:
            logger.warning("PERSIST_STATE disabled - restarts rely on the startup sweep")

        self.clients = get_chain_clients(profiles, self.settings)
        self.service = ForwarderService(self.settings, profiles, self.clients, db=db)
        await self.service.initialize()

    async def start(self) -> int:
        """Run until a shutdown signal. Returns the process exit code."""
        self.configure_logging()

        try:
            await self.setup()
        except ConfigurationError as e:
            for error in e.errors:
                logger.error(f"Configuration error: {error}")
            await self._cleanup()
            return 1
        except Exception as e:
            logger.error(f"Initialization failed: {e}", exc_info=True)
            await self._cleanup()
            return 1

        tasks = [asyncio.create_task(self.service.run(), name="forwarder")]
        logger.info("Forwarder task created")

        if self.settings.api_enabled:
            tasks.append(asyncio.create_task(self._run_api(), name="api"))
            logger.info("API task created")

        # Wait for shutdown signal
        await self._shutdown_event.wait()

        # In-flight calls finish before the loops exit
        self.service.stop()
        if self.api_server:
            self.api_server.should_exit = True

        await asyncio.gather(*tasks, return_exceptions=True)

        await self._cleanup()
        return 0

    async def _run_api(self):
        """Run the FastAPI status server."""
        from usdc_forwarder.api.app import create_app

        try:
            app = create_app(self.service)
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            self.api_server = uvicorn.Server(config)
            # Signals are handled by the application
            self.api_server.install_signal_handlers = lambda: None
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await self.api_server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")

        for client in self.clients.values():
            await client.close()

        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    app = Application()

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    exit_code = 0
    try:
        exit_code = loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
