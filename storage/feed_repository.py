"""DynamoDB access to calendar feed registrations and their sync state."""
import logging
from typing import List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.models import (
    FEED_KIND_CHANNEL_ACCOUNT,
    FEED_KIND_ICAL_URL,
    SYNC_IDLE,
    FeedRegistration,
    SyncState,
)

logger = logging.getLogger(__name__)

LEGACY_CHANNEL = 'ics'


class FeedRepository:
    """Feed registrations stored in the iCal URL and legacy channel account tables."""

    def __init__(self, feeds_table_name: str, accounts_table_name: str, dynamodb=None):
        """
        Args:
            feeds_table_name: Table of iCal URL registrations
            accounts_table_name: Legacy channel account table (``ics_pull_url``)
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.feeds_table = self.dynamodb.Table(feeds_table_name)
        self.accounts_table = self.dynamodb.Table(accounts_table_name)

    def get_ical_url(self, ical_url_id: str) -> Optional[FeedRegistration]:
        item = self.feeds_table.get_item(Key={'id': ical_url_id}).get('Item')
        if not item:
            return None
        return self._ical_url_item_to_feed(item)

    def get_channel_account(self, account_id: str) -> Optional[FeedRegistration]:
        item = self.accounts_table.get_item(Key={'id': account_id}).get('Item')
        if not item or item.get('kind', 'ics') != 'ics':
            return None
        return FeedRegistration(
            id=item['id'],
            property_id=item.get('property_id'),
            host_id=item.get('host_id'),
            channel=item.get('channel') or LEGACY_CHANNEL,
            url=item.get('ics_pull_url') or '',
            is_active=bool(item.get('is_active', True)),
            kind=FEED_KIND_CHANNEL_ACCOUNT,
            state=self._state_from_item(item),
        )

    def list_active_feeds(self) -> List[FeedRegistration]:
        """Scan for every active iCal URL registration."""
        response = self.feeds_table.scan(FilterExpression=Attr('is_active').eq(True))
        items = response.get('Items', [])
        while 'LastEvaluatedKey' in response:
            response = self.feeds_table.scan(
                FilterExpression=Attr('is_active').eq(True),
                ExclusiveStartKey=response['LastEvaluatedKey'],
            )
            items.extend(response.get('Items', []))

        feeds = [self._ical_url_item_to_feed(item) for item in items]
        logger.info(f"Found {len(feeds)} active feed registrations")
        return feeds

    def save_sync_state(self, feed: FeedRegistration, state: SyncState) -> None:
        """Persist the sync state on the feed's registration row."""
        table = self.accounts_table if feed.kind == FEED_KIND_CHANNEL_ACCOUNT else self.feeds_table
        try:
            table.update_item(
                Key={'id': feed.id},
                UpdateExpression='SET last_sync_at = :at, last_sync_status = :status',
                ExpressionAttributeValues={
                    ':at': state.last_sync_at,
                    ':status': state.last_sync_status,
                },
            )
        except ClientError as e:
            logger.error(f"Error saving sync state for feed {feed.id}: {e}")
            raise
        feed.state = state

    def _ical_url_item_to_feed(self, item: dict) -> FeedRegistration:
        return FeedRegistration(
            id=item['id'],
            property_id=item.get('property_id'),
            host_id=item.get('host_id'),
            channel=item.get('source') or item.get('ota_name') or 'other',
            url=item.get('url') or '',
            is_active=bool(item.get('is_active', True)),
            kind=FEED_KIND_ICAL_URL,
            state=self._state_from_item(item),
        )

    @staticmethod
    def _state_from_item(item: dict) -> SyncState:
        return SyncState(
            last_sync_at=item.get('last_sync_at'),
            last_sync_status=item.get('last_sync_status') or SYNC_IDLE,
        )
