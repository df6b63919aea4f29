#!/usr/bin/env python3
"""
Session start script - boots the configured venues and runs until one of
them reports a fatal error (exit 1) or the process is interrupted (exit 0).
"""
import asyncio
import sys

from core.config import settings, validate_configuration
from core.errors import SessionFatalError
from core.exchange_manager import ExchangeManager
from core.logging import logger


async def run() -> int:
    logger.info("=== Session Starting ===")
    try:
        validate_configuration(require_credentials=settings.has_credentials)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    manager = ExchangeManager()
    try:
        await manager.initialize_all()
        logger.info("=== Started Successfully ===")
        name, error = await manager.wait_fatal_any()
        logger.critical(f"{name} reported a fatal error, stopping: {error}")
        return 1
    except SessionFatalError as e:
        logger.critical(f"Startup failed: {e}")
        return 1
    finally:
        logger.info("=== Shutting Down ===")
        await manager.shutdown_all()
        logger.info("=== Shutdown Complete ===")


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        sys.exit(0)
