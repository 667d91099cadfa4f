"""Main entry point: wires storage, quotes, engine and the HTTP API."""
import asyncio
import logging
import signal

from dotenv import load_dotenv

load_dotenv()

from shared.config import Config
from shared.logging import setup_logging
from feeds.instruments import InstrumentCatalog
from feeds.quote_feed import SimulatedQuoteFeed
from execution.settlement import SettlementEngine
from storage.db import Database
from storage.ledger import AccountLedger
from storage.trade_store import TradeStore
from strategy.outcome_sequencer import OutcomeSequencer
from dashboard.main import app as dashboard_app, set_engine

logger = setup_logging("binary-options-desk")


class TradingDesk:
    """Owns the lifecycle of every component."""

    def __init__(self, config: Config):
        self.config = config
        self._shutdown = asyncio.Event()

        # Components (initialized in start())
        self.db: Database | None = None
        self.quotes: SimulatedQuoteFeed | None = None
        self.engine: SettlementEngine | None = None

    async def start(self):
        """Initialize and run all components."""
        logger.info(
            "Starting trading desk",
            extra={
                "pairs": self.config.currency_pairs_list,
                "trade_duration_seconds": self.config.TRADE_DURATION_SECONDS,
            },
        )

        # Database
        self.db = Database(self.config.DB_PATH)
        await self.db.init()

        # Quotes
        catalog = InstrumentCatalog.from_symbols(self.config.currency_pairs_list)
        self.quotes = SimulatedQuoteFeed(catalog, interval=self.config.QUOTE_INTERVAL_SECONDS)

        # Engine
        self.engine = SettlementEngine(
            db=self.db,
            ledger=AccountLedger(self.db),
            trades=TradeStore(self.db),
            sequencer=OutcomeSequencer(self.db),
            catalog=catalog,
            quotes=self.quotes,
            config=self.config,
        )
        await self.engine.recover_open_trades()

        # Dashboard
        set_engine(self.engine, demo_balance=self.config.DEMO_BALANCE)

        tasks = [
            asyncio.create_task(self.quotes.start(), name="quotes"),
            asyncio.create_task(self._run_dashboard(), name="dashboard"),
        ]

        logger.info("All components started")

        # Wait for shutdown signal
        await self._shutdown.wait()

        # Cleanup
        logger.info("Shutting down...")
        self.quotes.stop()
        await self.engine.shutdown()
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.db.close()
        logger.info("Shutdown complete")

    async def _run_dashboard(self):
        """Run the FastAPI app."""
        import uvicorn
        config = uvicorn.Config(
            dashboard_app,
            host=self.config.DASHBOARD_HOST,
            port=self.config.DASHBOARD_PORT,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        logger.info(
            "Dashboard starting",
            extra={"port": self.config.DASHBOARD_PORT},
        )
        await server.serve()

    def shutdown(self):
        self._shutdown.set()


def main():
    config = Config.from_env()
    logging.getLogger().setLevel(config.log_level_value)

    desk = TradingDesk(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig, frame):
        logger.info(f"Received signal {sig}")
        desk.shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        loop.run_until_complete(desk.start())
    except KeyboardInterrupt:
        desk.shutdown()
        loop.run_until_complete(asyncio.sleep(1))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
