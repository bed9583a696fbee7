import asyncio
import logging
import signal

from trader.campaign_coordinator import CampaignCoordinator
from trader.config import settings
from trader.database import init_db
from trader.exchange_clients.binance_client import BinanceClient
from trader.price_feeds import BinanceTickerFeed, PriceTickBus
from trader.services.shutdown_manager import shutdown_manager
from trader.trading_engine.orchestrator import OrderLifecycleOrchestrator

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )


async def run():
    logger.info("🚀 Initializing database...")
    await init_db()

    tick_bus = PriceTickBus()
    exchange = BinanceClient(
        api_key=settings.binance_api_key,
        api_secret=settings.binance_api_secret,
        base_url=settings.get_base_url(),
        tick_bus=tick_bus,
        timeout=settings.http_timeout_seconds,
    )
    feed = BinanceTickerFeed(tick_bus, settings.get_stream_url())
    orchestrator = OrderLifecycleOrchestrator(exchange)
    coordinator = CampaignCoordinator(exchange, orchestrator)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await feed.start()
    await coordinator.start()
    logger.info(f"🚀 Startup complete ({exchange.get_exchange_name()}, testnet={settings.binance_testnet})")

    try:
        await stop_requested.wait()
    finally:
        logger.info("🛑 Shutting down - waiting for in-flight orders...")
        status = await shutdown_manager.prepare_shutdown(timeout=60.0)
        if status.ready:
            logger.info(f"✅ {status.message}")
        else:
            logger.warning(f"⚠️ {status.message}")

        await coordinator.stop()
        await orchestrator.close()
        await feed.stop()
        logger.info("🛑 Shutdown complete")


def main():
    configure_logging()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
