"""
Shared job runner for scheduled background jobs.
Used by server (scheduler). Each run_* returns a dict with "message" and counts.
"""
import logging

logger = logging.getLogger(__name__)


async def run_deployment_status_sync():
    """Advance deploying deployments from the hosting platform and health-check live ones."""
    try:
        from services.deployment_status_tracker import deployment_status_tracker
        counts = await deployment_status_tracker.sync_all()
        logger.info(
            f"Deployment status sync completed: {counts['polled']} polled, "
            f"{counts['activated']} activated, {counts['failed']} failed, "
            f"{counts['health_checked']} health checked"
        )
        return {"message": f"Deployment status sync: {counts['polled']} polled", **counts}
    except Exception as e:
        logger.error(f"Deployment status sync job failed: {e}")
        raise
