import logging
import sys
import time
from typing import List, Optional

from booking_desk.config import ServerConfig, load_config
from booking_desk.engine.calendar_sync import SyncResult
from booking_desk.engine.service import SchedulingService

logger = logging.getLogger(__name__)


class CalendarWorker:
    """Periodic incremental sync of active calendars plus cache retention."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        service: Optional[SchedulingService] = None,
    ):
        self.config_path = config_path
        self.config: Optional[ServerConfig] = service.config if service else None
        self.service = service
        self.running = False

    def initialize(self) -> None:
        logger.info("Calendar worker starting...")

        if self.service is None:
            self.config = load_config(self.config_path)
            self.service = SchedulingService.from_config(self.config)
            logger.info(f"Database initialized: {self.config.database.backend.value}")

        if not self.service.config.google:
            logger.warning("Google OAuth not configured - calendar worker will exit gracefully")
            sys.exit(0)

        self.running = True
        logger.info("Calendar worker ready for sync operations")

    def run_sync_cycle(self) -> List[SyncResult]:
        assert self.service is not None
        logger.info("=== Starting sync cycle ===")

        results = self.service.sync_active_integrations()
        failed = [r for r in results if r.status == "error"]
        if failed:
            logger.warning(f"{len(failed)} of {len(results)} calendar syncs failed")

        self.service.sync.cleanup_old_intervals()

        logger.info("=== Sync cycle completed ===")
        return results

    def run(self) -> None:
        assert self.service is not None
        interval = self.service.config.sync.interval_seconds
        logger.info(f"Calendar worker running (sync interval: {interval}s)")

        while self.running:
            try:
                self.run_sync_cycle()
            except KeyboardInterrupt:
                logger.info("Received shutdown signal")
                self.running = False
                break
            except Exception as e:
                logger.error(f"Error in sync cycle: {e}", exc_info=True)

            if self.running:
                time.sleep(interval)

        logger.info("Calendar worker stopped")

    def stop(self) -> None:
        self.running = False


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    worker = CalendarWorker()
    worker.initialize()

    try:
        worker.run()
    except KeyboardInterrupt:
        logger.info("Shutting down calendar worker...")
        worker.stop()
    finally:
        if worker.service:
            worker.service.close()
        logger.info("Calendar worker shutdown complete")


if __name__ == "__main__":
    main()
