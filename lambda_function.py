"""AWS Lambda handler running one calendar reconciliation cycle."""
import json
import logging
import time
from typing import Dict, Any

from calendar_service import CalendarService
from logging_config import setup_logging
from settings import ConfigurationError, Settings


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Run one sync cycle between the CalDAV calendars and the cache.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and summary statistics
    """
    start_time = time.time()

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error(f"Invalid configuration: {str(e)}")
        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Invalid configuration',
                'error': str(e),
                'error_type': type(e).__name__
            })
        }

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)
    logger.info(
        f"Lambda execution started",
        extra={
            'calendars': [c.name for c in settings.calendars],
            'events_table_name': settings.events_table_name,
            'timeout_seconds': settings.timeout_seconds
        }
    )

    try:
        service = CalendarService.from_settings(settings)
        sync = service.force_sync()
        duration = time.time() - start_time

        if not sync.success:
            logger.error(
                f"Sync cycle failed: {sync.message}",
                extra={'status': sync.status.value,
                       'duration_seconds': round(duration, 2)}
            )
            return {
                'statusCode': 500,
                'body': json.dumps({
                    'message': 'Sync failed',
                    'error': sync.message,
                    'error_type': sync.status.value,
                    'note': 'Previous events remain in the cache',
                    'duration_seconds': round(duration, 2)
                })
            }

        result = sync.data
        logger.info(
            f"Lambda execution completed successfully",
            extra={'duration_seconds': round(duration, 2)}
        )
        return {
            'statusCode': 200,
            'body': json.dumps({
                'message': 'Sync completed successfully',
                'statistics': {
                    'events_fetched': result.fetched,
                    'events_added': result.added,
                    'events_updated': result.updated,
                    'remote_deletions': result.remote_deletions,
                    'deletions_propagated': result.deletions_propagated,
                    'events_purged': result.purged,
                    'failed_calendars': result.failed_calendars,
                    'duration_seconds': round(duration, 2)
                },
                'errors': result.errors
            })
        }

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Sync failed',
                'error': str(e),
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            })
        }
