"""
callgate entrypoint
Runs a handful of dashboard requests through the gateway and prints its status.
"""

import asyncio
import json
import sys

from loguru import logger

from callgate.services import HttpUpstream, close_gateway, init_gateway
from callgate.settings import global_settings

DEMO_REQUESTS = [
    ("market-trends", {"idea": "AI meal planner"}),
    ("reddit-sentiment", {"idea": "AI meal planner"}),
    ("market-trends", {"idea": "AI meal planner"}),
]


async def main() -> None:
    """Main function"""
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level.upper())

    if not global_settings.upstream_base_url:
        logger.error("CALLGATE_UPSTREAM_URL is not set")
        return

    logger.info("Starting callgate...")
    upstream = HttpUpstream(
        global_settings.upstream_base_url,
        api_key=global_settings.upstream_api_key,
        timeout=global_settings.upstream_timeout,
    )

    try:
        gateway = await init_gateway(upstream, global_settings)

        results = await asyncio.gather(
            *(gateway.request(name, body) for name, body in DEMO_REQUESTS),
            return_exceptions=True,
        )
        for (name, _), result in zip(DEMO_REQUESTS, results):
            if isinstance(result, Exception):
                logger.warning(f"{name}: unavailable, retry later ({result})")
            else:
                source = result.from_cache or ("shared" if result.deduplicated else "upstream")
                logger.info(f"{name}: served from {source}")

        status = await gateway.get_health_status()
        print(json.dumps(status, indent=2, default=str))

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    finally:
        await close_gateway()
        logger.info("callgate stopped")


if __name__ == "__main__":
    asyncio.run(main())
