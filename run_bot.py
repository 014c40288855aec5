#!/usr/bin/env python3
"""
Run the multi-stream bot: restore every onboarded streamer, then serve
webhooks and onboarding requests until interrupted.
"""

import asyncio
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

from multikick import KickValidationError, MultiStreamBot, MultiStreamConfig, MultiStreamWebhookServer, set_log_level

logger = logging.getLogger("multikick.run_bot")


async def main() -> int:
    try:
        config = MultiStreamConfig.from_env()
    except KickValidationError as e:
        logger.error(str(e))
        return 1
    set_log_level(config.log_level)

    bot = MultiStreamBot(config)
    server = MultiStreamWebhookServer(bot, config)

    try:
        await bot.start()
        await server.start()
        logger.info(f"Onboard streamers by POSTing code and code_verifier to {config.add_streamer_path}")
        while bot.is_active:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("Shutting down multi-stream bot...")
    finally:
        await server.stop()
        await bot.shutdown()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass
