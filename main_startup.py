#!/usr/bin/env python3
"""
Deterministic Startup - Aid Claims Service

Implements:
- Fixed startup sequence with explicit dependency wiring
- Fail-fast on configuration, database and on-chain adapter problems
- One worker pool per queue plus the periodic verification sweep
"""

import asyncio
import logging
import signal
import sys
from typing import Dict, List, Optional

from config import Config
from database import check_connection, configure_database, create_tables, dispose_engine, get_engine
from jobs.job_queue import JobQueue
from jobs.maintenance_scheduler import MaintenanceScheduler
from jobs.queue_worker import QueueWorker
from jobs.worker_registry import build_workers, start_workers, stop_workers
from services.audit_trail_service import AuditTrailService
from services.campaign_service import CampaignService
from services.claim_service import ClaimService
from services.metrics_service import MetricsService
from services.notification_service import NotificationService
from services.onchain_adapter import OnchainAdapter, create_onchain_adapter
from services.onchain_service import OnchainService
from services.verification_flow_service import VerificationFlowService
from utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class StartupManager:
    """
    Startup manager with a deterministic sequence.
    Owns every service instance; nothing is wired through module globals.
    """

    def __init__(self, database_url: Optional[str] = None, run_workers: bool = True):
        self.database_url = database_url
        self.run_workers = run_workers

        self.session_factory = None
        self.metrics: Optional[MetricsService] = None
        self.audit_service: Optional[AuditTrailService] = None
        self.job_queue: Optional[JobQueue] = None
        self.onchain_adapter: Optional[OnchainAdapter] = None
        self.notification_service: Optional[NotificationService] = None
        self.onchain_service: Optional[OnchainService] = None
        self.campaign_service: Optional[CampaignService] = None
        self.claim_service: Optional[ClaimService] = None
        self.verification_service: Optional[VerificationFlowService] = None
        self.workers: Dict[str, QueueWorker] = {}

        self.maintenance_scheduler: Optional[MaintenanceScheduler] = None
        self.startup_complete = False
        self.startup_errors: List[str] = []

    async def validate_configuration(self) -> bool:
        Config.log_environment_config()
        result = Config.validate()
        if result["issues"]:
            self.startup_errors.extend(f"Config: {issue}" for issue in result["issues"])
            return False
        return True

    async def initialize_database(self) -> bool:
        """Configure the engine, verify connectivity and create tables"""
        try:
            logger.info("🗄️ Initializing database...")
            self.session_factory = configure_database(self.database_url)

            if not await check_connection(get_engine()):
                raise ConnectionError("Database connection test failed")
            if not await create_tables(get_engine()):
                raise RuntimeError("Table creation failed")

            logger.info("✅ Database initialization complete")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    async def initialize_adapter(self) -> bool:
        """Select the on-chain adapter; unknown or unimplemented names stop startup"""
        try:
            self.onchain_adapter = create_onchain_adapter(Config.ONCHAIN_ADAPTER)
            if not Config.ONCHAIN_ENABLED:
                logger.info("⏭️ On-chain calls disabled (ONCHAIN_ENABLED=false)")
            return True
        except ConfigurationError as e:
            logger.error(f"❌ On-chain adapter configuration invalid: {e.message}")
            self.startup_errors.append(f"Adapter: {e.message}")
            return False

    async def initialize_services(self) -> bool:
        """Wire services with explicit dependencies"""
        try:
            logger.info("⚙️ Initializing core services...")
            self.metrics = MetricsService()
            self.audit_service = AuditTrailService(self.session_factory)
            self.job_queue = JobQueue(self.session_factory)
            self.notification_service = NotificationService(self.job_queue)
            self.onchain_service = OnchainService(self.job_queue)
            self.campaign_service = CampaignService(self.session_factory)
            self.claim_service = ClaimService(
                session_factory=self.session_factory,
                onchain_adapter=self.onchain_adapter,
                audit_service=self.audit_service,
                metrics_service=self.metrics,
            )
            self.verification_service = VerificationFlowService(
                self.notification_service, session_factory=self.session_factory
            )
            logger.info("✅ Services initialized")
            return True
        except Exception as e:
            logger.error(f"❌ Service initialization failed: {e}", exc_info=True)
            self.startup_errors.append(f"Services: {e}")
            return False

    async def initialize_workers(self) -> bool:
        if not self.run_workers:
            logger.info("⏭️ Queue workers not started (run_workers=False)")
            return True
        try:
            self.workers = build_workers(
                self.job_queue,
                self.onchain_adapter,
                self.verification_service,
                metrics=self.metrics,
            )
            await start_workers(self.workers)
            self.maintenance_scheduler = MaintenanceScheduler(
                self.job_queue, Config.VERIFICATION_SWEEP_INTERVAL_SECONDS
            )
            self.maintenance_scheduler.start()
            return True
        except Exception as e:
            logger.error(f"❌ Worker startup failed: {e}", exc_info=True)
            self.startup_errors.append(f"Workers: {e}")
            if self.workers:
                await stop_workers(self.workers)
                self.workers = {}
            return False

    async def startup_sequence(self) -> bool:
        """Execute the startup sequence; any failed step stops it"""
        logger.info("🚀 Starting Aid Claims service...")

        startup_steps = [
            ("Config", self.validate_configuration),
            ("Database", self.initialize_database),
            ("Adapter", self.initialize_adapter),
            ("Services", self.initialize_services),
            ("Workers", self.initialize_workers),
        ]

        for step_name, step_func in startup_steps:
            logger.info(f"▶️ Executing step: {step_name}")
            if not await step_func():
                logger.error(f"🚨 Step '{step_name}' failed - cannot continue startup")
                for error in self.startup_errors:
                    logger.error(f"  - {error}")
                return False

        self.startup_complete = True
        logger.info("✅ Startup sequence completed successfully")
        return True

    async def shutdown(self) -> None:
        logger.info("🛑 Shutting down Aid Claims service...")
        if self.maintenance_scheduler is not None:
            await self.maintenance_scheduler.stop()
            self.maintenance_scheduler = None
        if self.workers:
            await stop_workers(self.workers)
            self.workers = {}
        await dispose_engine()
        self.startup_complete = False
        logger.info("👋 Shutdown complete")


async def main() -> int:
    """Worker entry point: start everything, run until SIGINT/SIGTERM"""
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    manager = StartupManager()
    if not await manager.startup_sequence():
        logger.error("❌ Startup failed - exiting")
        await manager.shutdown()
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    logger.info("🎉 Aid Claims service running")
    try:
        await stop_event.wait()
    finally:
        await manager.shutdown()
    return 0


def run() -> None:
    """Console-script entry point"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("👋 Stopped by user")


if __name__ == "__main__":
    run()
