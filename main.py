"""
tripsync entry point
Runs one synchronization pass: replay queued offline work, then refresh trips
and the collections hanging off each trip.
"""

import asyncio

from loguru import logger

from tripsync.runtime import PACKING_ITEMS, PARTICIPANTS, TRIP_DAYS, TRIPS, SyncRuntime
from tripsync.services.errors import ServiceError, SessionExpiredError
from tripsync.settings import load_settings


async def main() -> None:
    """Main function"""
    logger.info("Starting tripsync...")
    settings = load_settings()

    try:
        async with SyncRuntime(settings) as runtime:
            if not runtime.sessions.is_authenticated:
                logger.warning("No stored session, sign in from the app first")
                return

            # Check connectivity before touching the network
            if settings.probe_url:
                await runtime.reachability.probe()
            if not runtime.reachability.is_online:
                logger.warning("Offline, nothing to sync")
                return

            logger.info("Refreshing trips...")
            trips = await runtime.collection(TRIPS).refresh(force=True)

            for trip in trips:
                for config in (TRIP_DAYS, PARTICIPANTS, PACKING_ITEMS):
                    runtime.collection(config, owner_id=trip.id)

            logger.info(f"Syncing {len(runtime.collections)} collections...")
            reports = await runtime.sync_all()
            for report in reports:
                if report.succeeded or report.failed or report.skipped:
                    logger.info(f"Replay: {report.to_dict()}")

            logger.info("Sync pass finished")

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except SessionExpiredError:
        logger.error("Session expired, sign in again")
    except ServiceError as e:
        logger.error(f"Error in sync pass: {e}")
    finally:
        logger.info("tripsync stopped")


if __name__ == "__main__":
    asyncio.run(main())
