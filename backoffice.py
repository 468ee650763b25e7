# backoffice/backoffice.py
"""
Compensation back office - main entry point.
Loads configuration, prepares the database, validates the compensation plan
and runs the event handlers and scheduler until stopped.
"""
import asyncio
import logging
import signal
import sys

from config import Config, ConfigurationError
from core.db import setup_database, dispose_engine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('backoffice.log')
    ]
)

logger = logging.getLogger(__name__)


async def initialize_backoffice():
    """
    Initialize configuration, database, plan and background jobs.

    Returns:
        MLMScheduler: Started scheduler
    """
    try:
        logger.info("=" * 60)
        logger.info("BACK OFFICE INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logging.getLogger().setLevel(Config.get(Config.LOG_LEVEL, "INFO"))
        log_file = Config.get(Config.LOG_FILE)
        if log_file and log_file != 'backoffice.log':
            logging.getLogger().addHandler(logging.FileHandler(log_file))
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Validate critical configuration
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🔍 Validating critical configuration keys...")
        Config.validate_critical_keys()
        logger.info("✓ Configuration validated")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Setup database
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("💾 Setting up database...")
        setup_database()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Load and validate compensation plan and ranks
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📐 Validating compensation plan...")
        from mlm_system.config.ranks import RANK_CONFIG
        from mlm_system.config.plan import COMPENSATION_PLAN
        RANK_CONFIG()
        plan = COMPENSATION_PLAN()
        logger.info(f"✓ Compensation plan ready ({plan.width}x{plan.depth})")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 5: Setup MLM event handlers
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🎲 Setting up MLM event handlers...")
        from mlm_system.events.setup import setup_mlm_event_handlers
        setup_mlm_event_handlers()
        logger.info("✓ MLM event handlers registered")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 6: Start background scheduler
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🚀 Starting background scheduler...")
        import background.mlm_scheduler as mlm_scheduler
        mlm_scheduler.scheduler = mlm_scheduler.MLMScheduler()
        await mlm_scheduler.scheduler.start()
        logger.info("✓ Background scheduler started")

        Config.set(Config.SYSTEM_READY, True)

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return mlm_scheduler.scheduler

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


async def main():
    """Main entry point."""
    scheduler = None
    try:
        scheduler = await initialize_backoffice()

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        logger.info("🔄 Back office running, waiting for jobs...")
        await stop_event.wait()

    except ConfigurationError as e:
        logger.critical(f"❌ Configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if scheduler:
            await scheduler.stop()
        dispose_engine()
        logger.info("👋 Back office shutdown complete")


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Back office stopped")
