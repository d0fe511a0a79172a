import atexit
import logging
import time

from apscheduler.schedulers.background import BackgroundScheduler

from .errors import StoreUnavailable
from .service import FileService

TEMP_FILE_MAX_AGE_SECONDS = 3600

logger = logging.getLogger("piicloud.maintenance")


def sweep_orphaned_blobs(service: FileService, grace_seconds: float) -> int:
    """Remove blobs that no record references.

    Only blobs older than *grace_seconds* are considered, so an upload whose
    record is still being written is left alone.
    """

    try:
        referenced = service.records.stored_names()
    except StoreUnavailable:
        logger.warning("orphan_sweep_skipped reason=store_unavailable")
        return 0

    removed = 0
    cutoff = time.time() - grace_seconds
    for blob in service.blobs.iter_blobs():
        if blob.name in referenced:
            continue
        try:
            if blob.stat().st_mtime >= cutoff:
                continue
            blob.unlink()
        except FileNotFoundError:
            continue
        except OSError as error:
            logger.warning("orphan_cleanup_failed path=%s error=%s", blob, error)
            continue
        removed += 1
        logger.info("orphan_file_removed path=%s", blob)

    if removed:
        logger.info("orphan_cleanup_completed removed=%d", removed)
    return removed


def sweep_temp_files(service: FileService) -> int:
    return service.blobs.remove_stale_temp_files(TEMP_FILE_MAX_AGE_SECONDS)


def start_maintenance(
    service: FileService,
    interval_minutes: int,
    grace_seconds: float,
) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=sweep_orphaned_blobs,
        args=(service, grace_seconds),
        trigger="interval",
        minutes=max(1, interval_minutes),
        id="sweep_orphaned_blobs",
        name="Clean up orphaned blobs",
        replace_existing=True,
    )
    scheduler.add_job(
        func=sweep_temp_files,
        args=(service,),
        trigger="interval",
        minutes=max(1, interval_minutes),
        id="sweep_temp_files",
        name="Clean up temporary files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(stop_maintenance, scheduler)
    logger.info("maintenance_started interval_minutes=%d", max(1, interval_minutes))
    return scheduler


def stop_maintenance(scheduler: BackgroundScheduler) -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
