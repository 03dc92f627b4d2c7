"""Main entry point - runs the relayer under its supervisor."""

import asyncio
import logging
import signal
import sys
from functools import partial

from voip_relayer.config import get_settings
from voip_relayer.handles import build_handles, load_admin_identities
from voip_relayer.ledger.database import close_db, get_db, init_db
from voip_relayer.relayer import Relayer
from voip_relayer.supervisor import RestartPolicy, Supervisor

logger = logging.getLogger(__name__)

BANNER = r"""
__     __ ___ ___ ____    _____ ___ _   _    _    _   _  ____ _____
\ \   / // _ \_ _|  _ \  |  ___|_ _| \ | |  / \  | \ | |/ ___| ____|
 \ \ / /| | | | || |_) | | |_   | ||  \| | / _ \ |  \| | |   |  _|
  \ V / | |_| | ||  __/  |  _|  | || |\  |/ ___ \| |\  | |___| |___
   \_/   \___/___|_|     |_|   |___|_| \_/_/   \_\_| \_|\____|_____|
"""


class Application:
    """Main application that supervises the relayer."""

    def __init__(self):
        self.settings = get_settings()
        self.supervisor = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> int:
        """Start the relayer. Returns the process exit code."""
        # Configure logging
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        for line in BANNER.strip("\n").splitlines():
            logger.info(line)
        logger.info("VOIP FINANCE RELAYER ACTIVATED")
        logger.info(f"Environment: {self.settings.environment}")
        logger.info(f"Configuration: {self.settings.get_safe_dict()}")

        missing = self.settings.missing_required()
        if missing:
            logger.error(f"Missing required configuration: {', '.join(missing)}")
            return 1

        try:
            admins = load_admin_identities(self.settings)
        except ValueError as e:
            logger.error(str(e))
            return 1
        logger.info(f"Ethereum admin: {admins.eth.address}")
        logger.info(f"Solana admin: {admins.sol.pubkey()}")

        db = None
        if self.settings.ledger_enabled:
            await init_db()
            db = get_db
            logger.info("Database initialized")
        else:
            logger.warning("Ledger disabled - logs emitted between sessions are not replayed")

        relayer = Relayer(
            partial(build_handles, self.settings, admins),
            db=db,
            max_concurrency=self.settings.max_concurrent_settlements,
        )
        self.supervisor = Supervisor(
            relayer.run_session,
            policy=RestartPolicy.from_settings(self.settings),
        )

        task = asyncio.create_task(self.supervisor.run_forever())
        shutdown = asyncio.create_task(self._shutdown_event.wait())

        # Wait for shutdown signal
        await asyncio.wait({task, shutdown}, return_when=asyncio.FIRST_COMPLETED)

        self.supervisor.stop()
        for pending in (task, shutdown):
            pending.cancel()
        await asyncio.gather(task, shutdown, return_exceptions=True)

        await self._cleanup()
        return 0

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")
        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        if self.supervisor is not None:
            self.supervisor.stop()
        self._shutdown_event.set()


def main():
    """Main entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    app = Application()

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
