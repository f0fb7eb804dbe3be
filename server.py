#!/usr/bin/env python3
"""
VPS Orchestrator server - single event loop
Runs the HTTP API and the background state sync in one asyncio loop
"""

import asyncio
import logging
import signal
import sys

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# Provider URLs carry credentials in the query string
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from api_server import start_api_server, stop_api_server
from database import close_connection_pool, init_database
from services.hostycare import get_hostycare_service
from services.virtualizor import get_default_panels
from state_sync import start_state_sync_loop, stop_state_sync_loop
from utils.environment import get_env_bool, get_env_int

# Global shutdown flag
shutdown_requested = False

def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")

async def main_server_loop() -> bool:
    """Initialize storage, start the API and the sync loop, run until shutdown"""
    api_runner = None
    sync_started = False

    try:
        logger.info("🔄 Initializing database...")
        await init_database()
        logger.info("✅ Database initialized")

        hostycare = get_hostycare_service()
        panels = get_default_panels()
        logger.info(f"🔌 Hostycare configured: {hostycare.is_configured}")
        logger.info(f"🔌 Virtualizor panels: {', '.join(p.name for p in panels) or 'none'}")

        port = get_env_int('API_PORT', 5000, minimum=1)
        api_runner = await start_api_server(port)

        if get_env_bool('STATE_SYNC_ENABLED', True):
            start_state_sync_loop()
            sync_started = True
        else:
            logger.info("🔇 State sync loop disabled by configuration")

        logger.info("✅ VPS orchestrator running")

        status_counter = 0
        while not shutdown_requested:
            await asyncio.sleep(1)
            status_counter += 1
            if status_counter % 300 == 0:  # Log every 5 minutes
                logger.info("⏰ VPS orchestrator running - ready to receive requests")

        logger.info("🛑 Shutdown requested - cleaning up...")
        return True

    except Exception as runtime_error:
        logger.error(f"❌ Application runtime error: {runtime_error}")
        logger.error("💥 FAIL FAST: Exiting for supervisor restart")
        sys.exit(1)
    finally:
        if sync_started:
            await stop_state_sync_loop()
        if api_runner is not None:
            await stop_api_server()
        close_connection_pool()
        logger.info("✅ Cleanup completed")

def main():
    """Main entry point"""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("🚀 Starting VPS orchestrator...")

    try:
        result = asyncio.run(main_server_loop())
        logger.info("✅ Server stopped normally" if result else "⚠️ Server stopped with error")
        return result
    except Exception as e:
        logger.error(f"💥 Critical server failure: {e}")
        sys.exit(1)

if __name__ == '__main__':
    main()
