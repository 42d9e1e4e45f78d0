#!/usr/bin/env python3
"""
livebroadcaster - Main Entry Point
Schedules live broadcasts and supervises the transcoders that stream them.
"""

import argparse
import uvicorn
import logging
import sys
import os
import asyncio

# Add the src directory to Python path so local modules in `src/` can be imported
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

# Import configs AFTER setting up the path
from redis_config import get_redis_config, should_use_redis
from config import settings, VERSION


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="livebroadcaster scheduler and API server")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Apply the schedule a single time and exit (for cron style invocation)",
    )
    return parser.parse_args(argv)


def run_once(logger) -> int:
    """Run one scheduler tick; the exit code is non-zero when the tick aborted."""
    from exceptions import SchedulerFatal

    async def _tick():
        from api import scheduler, store, youtube_api
        from store import RedisBroadcastStore

        try:
            if isinstance(store, RedisBroadcastStore):
                await store.connect()
            return await scheduler.apply_schedule()
        finally:
            await youtube_api.client.close()
            if isinstance(store, RedisBroadcastStore):
                await store.close()

    try:
        result = asyncio.run(_tick())
    except SchedulerFatal as e:
        logger.error(f"❌ Schedule tick failed: {e}")
        return 1

    if result is None:
        logger.warning("⏭️  Another tick is running, nothing done")
        return 0

    logger.info(
        f"✅ Tick done: {len(result.started)} started, {len(result.stopped)} stopped, "
        f"{len(result.skipped)} skipped")
    return 0


def main(argv=None):
    """Main function to start the livebroadcaster server."""
    args = parse_args(argv)

    # Try to use uvloop for better async performance (2-4x faster)
    try:
        import uvloop
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        use_uvloop = True
    except ImportError:
        use_uvloop = False

    # Configure logging
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger = logging.getLogger(__name__)

    if args.once:
        sys.exit(run_once(logger))

    logger.info("="*60)
    logger.info(
        f"⚡️ Starting livebroadcaster v{VERSION} on {settings.HOST}:{settings.PORT}")
    logger.info("="*60)
    logger.info(f"ℹ️  Log level set to: {settings.LOG_LEVEL}")
    logger.info(f"ℹ️  Environment: {settings.APP_ENV}")
    if use_uvloop:
        logger.info("✅ Using uvloop for optimized async I/O performance")
    else:
        logger.info(
            "✅ Using standard asyncio (install uvloop for better performance)")

    if settings.EVENTLOOP_ENABLED:
        logger.info(f"✅ Scheduler loop enabled, ticking every {settings.EVENTLOOP_TIMER}s")
    else:
        logger.info("ℹ️  Scheduler loop disabled; trigger ticks via POST /schedule/apply or --once")

    if settings.FFMPEG_LOG_DIRECTORY:
        logger.info(f"✅ Transcoder logs written to {settings.FFMPEG_LOG_DIRECTORY}")

    if settings.RELOAD:
        logger.info("🔄 Auto-reload is enabled.")

    # If Redis is enabled, perform a quick connectivity check and log result
    if should_use_redis():
        try:
            import redis.asyncio as redis_async

            redis_cfg = get_redis_config()
            redis_url = redis_cfg.get('redis_url')

            async def _check_redis():
                client = redis_async.from_url(redis_url, decode_responses=True)
                try:
                    await client.ping()
                    return True
                except redis_async.RedisError:
                    return False
                finally:
                    await client.aclose()

            ok = asyncio.run(_check_redis())
            if ok:
                logger.info(
                    "✅ Redis available for the broadcast store and tick lock")
            else:
                logger.warning(
                    f"❌  Redis configured but ping failed for: {redis_url}; ticks will fail until it is reachable")

        except ImportError:
            logger.warning(
                "❌ Redis async library not installed; REDIS_ENABLED is set but unavailable")

    # Start the server using settings from the config object
    uvicorn.run(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        loop="uvloop" if use_uvloop and not settings.RELOAD else "asyncio"
    )


if __name__ == "__main__":
    main()
