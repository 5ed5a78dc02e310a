"""AWS Lambda handlers for OTA calendar feed synchronization."""
import json
import logging
import os
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fetcher.ics_fetcher import (
    FeedFetchError,
    FeedHttpError,
    IcsFeedFetcher,
    InvalidFeedUrlError,
    MalformedFeedError,
    validate_feed_url,
)
from processor.ics_parser import parse_ics
from processor.metadata_enricher import enrich_events
from processor.models import FeedRegistration, SyncReport
from processor.reconciler import ReconciliationEngine
from storage.dynamodb_block_store import DynamoDBBlockStore
from storage.feed_repository import FeedRepository
from storage.sync_status import SyncStatusTracker

_STANDARD_RECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class Settings:
    blocks_table_name: str
    feeds_table_name: str
    accounts_table_name: str
    log_level: str
    timeout_seconds: int
    max_retries: int
    stale_running_minutes: int


def load_settings() -> Settings:
    """Read configuration from environment variables."""
    return Settings(
        blocks_table_name=os.environ.get('BLOCKS_TABLE_NAME', 'calendar_blocks'),
        feeds_table_name=os.environ.get('FEEDS_TABLE_NAME', 'ical_urls'),
        accounts_table_name=os.environ.get('ACCOUNTS_TABLE_NAME', 'channel_accounts'),
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        timeout_seconds=int(os.environ.get('TIMEOUT_SECONDS', '30')),
        max_retries=int(os.environ.get('MAX_RETRIES', '3')),
        stale_running_minutes=int(os.environ.get('STALE_RUNNING_MINUTES', '30')),
    )


class FeedResolutionError(Exception):
    """Trigger does not identify a usable feed."""

    def __init__(self, status_code: int, error: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.message = message


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body, default=str),
    }


def _error_response(status_code: int, error: str, message: str, debug: Optional[dict] = None):
    body = {'success': False, 'error': error, 'message': message}
    if debug:
        body['debug'] = debug
    return _response(status_code, body)


def _request_params(event: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge direct invocation payload, query string and JSON body."""
    event = event or {}
    params = {k: v for k, v in event.items() if not isinstance(v, (dict, list))}
    params.update(event.get('queryStringParameters') or {})

    body = event.get('body')
    if isinstance(body, str) and body.strip():
        try:
            body = json.loads(body)
        except ValueError:
            body = None
    if isinstance(body, dict):
        params.update(body)
    return params


def resolve_feed(repository: FeedRepository, params: Dict[str, Any]) -> FeedRegistration:
    """
    Find the feed a trigger refers to.

    ``ical_url_id`` is preferred; ``account_id`` resolves a legacy channel
    account.

    Raises:
        FeedResolutionError: If the feed is missing or unusable
    """
    ical_url_id = params.get('ical_url_id')
    account_id = params.get('account_id')

    if ical_url_id:
        feed = repository.get_ical_url(str(ical_url_id))
        lookup = f"iCal URL {ical_url_id}"
    elif account_id:
        feed = repository.get_channel_account(str(account_id))
        lookup = f"channel account {account_id}"
    else:
        raise FeedResolutionError(400, 'missing_feed_id', 'ical_url_id or account_id is required')

    if feed is None:
        raise FeedResolutionError(404, 'feed_not_found', f"No feed found for {lookup}")
    try:
        validate_feed_url(feed.url)
    except InvalidFeedUrlError as e:
        raise FeedResolutionError(422, 'feed_misconfigured', f"{lookup}: {e}")
    if not feed.property_id:
        raise FeedResolutionError(422, 'feed_misconfigured', f"{lookup} has no property")
    return feed


def sync_feed(
    feed: FeedRegistration,
    repository: FeedRepository,
    fetcher: IcsFeedFetcher,
    engine: ReconciliationEngine,
) -> SyncReport:
    """
    Fetch, parse and reconcile one feed, recording its status.

    Raises:
        FeedFetchError: If the feed could not be retrieved
    """
    logger = logging.getLogger(__name__)
    tracker = SyncStatusTracker(repository, feed)

    with tracker.track():
        ics_text = fetcher.fetch(feed.url)
        events = parse_ics(ics_text)
        logger.info(f"Parsed {len(events)} events from feed {feed.id}")
        report = engine.reconcile(
            events,
            property_id=feed.property_id,
            host_id=feed.host_id,
            channel=feed.channel,
        )
    return report


def _fetch_error_response(e: FeedFetchError) -> Dict[str, Any]:
    if isinstance(e, InvalidFeedUrlError):
        return _error_response(400, 'invalid_url', str(e))
    if isinstance(e, MalformedFeedError):
        return _error_response(422, 'malformed_feed', str(e))
    if isinstance(e, FeedHttpError):
        return _error_response(502, 'http_error', str(e))
    return _error_response(502, 'transport_error', str(e))


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Sync a single calendar feed.

    Args:
        event: {"ical_url_id": ...} or legacy {"account_id": ...}, directly
            or through API Gateway query string / JSON body
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    settings = load_settings()
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.info("Lambda execution started", extra={'blocks_table': settings.blocks_table_name})

    try:
        repository = FeedRepository(settings.feeds_table_name, settings.accounts_table_name)
        feed = resolve_feed(repository, _request_params(event))

        fetcher = IcsFeedFetcher(timeout=settings.timeout_seconds, max_retries=settings.max_retries)
        store = DynamoDBBlockStore(table_name=settings.blocks_table_name)
        engine = ReconciliationEngine(store)

        report = sync_feed(feed, repository, fetcher, engine)

    except FeedResolutionError as e:
        logger.warning(f"Cannot resolve feed: {e.message}")
        return _error_response(e.status_code, e.error, e.message)

    except FeedFetchError as e:
        logger.error(
            f"Failed to fetch calendar feed: {e}",
            extra={'error_type': type(e).__name__},
        )
        return _fetch_error_response(e)

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
        return _error_response(
            500,
            'internal_error',
            str(e) or type(e).__name__,
            debug={'error_type': type(e).__name__, 'stack': traceback.format_exc()},
        )

    duration = time.time() - start_time
    message = (
        'No events found in calendar' if report.processed == 0 and report.skipped == 0
        else f"Synced {report.processed} events ({report.created} created, "
             f"{report.updated} updated, {report.skipped} skipped)"
    )
    logger.info(
        "Lambda execution completed successfully",
        extra={'duration_seconds': round(duration, 2), 'report': report.to_dict()},
    )
    return _response(200, {'success': True, **report.to_dict(), 'message': message})


def auto_sync_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Scheduled sync of every active feed.

    Feeds still running from another invocation are skipped unless their
    state is older than the stale grace period.
    """
    settings = load_settings()
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)
    logger.info("Starting automatic calendar sync")

    try:
        repository = FeedRepository(settings.feeds_table_name, settings.accounts_table_name)
        feeds = repository.list_active_feeds()
    except Exception as e:
        logger.error(f"Could not list feed registrations: {e}", exc_info=True)
        return _error_response(500, 'internal_error', str(e))

    if not feeds:
        return _response(200, {
            'success': True,
            'message': 'No active iCal URLs to sync',
            'successCount': 0,
            'failureCount': 0,
            'skippedCount': 0,
            'results': [],
        })

    fetcher = IcsFeedFetcher(timeout=settings.timeout_seconds, max_retries=settings.max_retries)
    engine = ReconciliationEngine(DynamoDBBlockStore(table_name=settings.blocks_table_name))
    grace_period = timedelta(minutes=settings.stale_running_minutes)
    now = datetime.now(timezone.utc)

    results = []
    success_count = failure_count = skipped_count = 0

    for feed in feeds:
        if feed.state.is_running and not feed.state.is_stale(grace_period, now):
            logger.info(f"Feed {feed.id} is already syncing, skipping")
            skipped_count += 1
            results.append({'id': feed.id, 'channel': feed.channel, 'success': False,
                            'skipped': True, 'error': 'already_running'})
            continue

        if not feed.url or not feed.property_id:
            logger.warning(f"Feed {feed.id} is missing its URL or property, skipping")
            failure_count += 1
            results.append({'id': feed.id, 'channel': feed.channel, 'success': False,
                            'error': 'feed_misconfigured'})
            continue

        if feed.state.is_error:
            logger.info(f"Feed {feed.id} failed its last run ({feed.state.last_sync_status}), retrying")

        try:
            report = sync_feed(feed, repository, fetcher, engine)
        except Exception as e:
            logger.error(f"Sync failed for feed {feed.id} ({feed.channel}): {e}",
                         exc_info=not isinstance(e, FeedFetchError))
            failure_count += 1
            results.append({'id': feed.id, 'channel': feed.channel, 'success': False,
                            'error': str(e)})
            continue

        success_count += 1
        results.append({'id': feed.id, 'channel': feed.channel, 'success': True,
                        'data': report.to_dict()})

    logger.info(
        f"Automatic sync completed: {success_count} successful, "
        f"{failure_count} failed, {skipped_count} skipped"
    )
    return _response(200, {
        'success': True,
        'message': f"Synced {len(feeds)} iCal URLs",
        'successCount': success_count,
        'failureCount': failure_count,
        'skippedCount': skipped_count,
        'results': results,
    })


def preview_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Fetch and parse a feed URL without writing anything.

    Returns the parsed events with extracted guest metadata, for the
    feed registration screen.
    """
    settings = load_settings()
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    url = _request_params(event).get('url')
    if not url:
        return _error_response(400, 'missing_url', 'url is required')
    try:
        validate_feed_url(url)
    except InvalidFeedUrlError as e:
        return _error_response(400, 'invalid_url', str(e))

    fetcher = IcsFeedFetcher(timeout=settings.timeout_seconds, max_retries=1)
    try:
        events = enrich_events(parse_ics(fetcher.fetch(url)))
    except FeedFetchError as e:
        logger.warning(f"Preview fetch failed for {url}: {e}")
        return _fetch_error_response(e)

    logger.info(f"Previewed {len(events)} events from {url}")
    return _response(200, {
        'success': True,
        'count': len(events),
        'events': [ev.to_dict() for ev in events],
    })
