"""DynamoDB-backed calendar block store."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from processor.models import CalendarBlock
from storage.block_store import (
    NO_UNIQUE_CONSTRAINT,
    UNIQUE_VIOLATION,
    BlockStore,
    StoreError,
)

logger = logging.getLogger(__name__)

BLOCK_KEY_ATTRIBUTE = 'block_key'
BLOCK_KEY_INDEX = 'block-key-index'

_CONFLICT_CODES = ('ConditionalCheckFailedException', 'TransactionConflictException')


def make_block_key(property_id: str, source: str, external_id: str) -> str:
    """Composite identity stored on every block item."""
    return f"{property_id}#{source}#{external_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _store_error(error: ClientError) -> StoreError:
    code = error.response.get('Error', {}).get('Code', 'Unknown')
    if code in _CONFLICT_CODES:
        return StoreError(UNIQUE_VIOLATION, str(error))
    return StoreError(code, str(error))


class DynamoDBBlockStore(BlockStore):
    """
    Calendar blocks in a DynamoDB table.

    Two table layouts are supported. Tables whose partition key is
    ``block_key`` enforce one item per (property_id, source, external_id)
    and get atomic upserts. Older tables are keyed on ``id`` with a
    ``block-key-index`` GSI; they cannot upsert on the composite key, so
    ``upsert_block`` reports NO_UNIQUE_CONSTRAINT and callers fall back
    to lookup-then-write.
    """

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the calendar blocks table
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        self._keyed_on_block = None
        logger.info(f"Initialized DynamoDBBlockStore for table: {table_name}")

    @property
    def keyed_on_block(self) -> bool:
        """Whether the table's partition key is the composite block key."""
        if self._keyed_on_block is None:
            try:
                key_schema = self.table.key_schema
            except ClientError as e:
                raise _store_error(e)
            hash_keys = [k['AttributeName'] for k in key_schema if k['KeyType'] == 'HASH']
            self._keyed_on_block = hash_keys == [BLOCK_KEY_ATTRIBUTE]
            logger.info(
                f"Table {self.table_name} keyed on {hash_keys}; "
                f"atomic upsert {'enabled' if self._keyed_on_block else 'disabled'}"
            )
        return self._keyed_on_block

    def upsert_block(self, block: CalendarBlock) -> bool:
        if not self.keyed_on_block:
            raise StoreError(
                NO_UNIQUE_CONSTRAINT,
                f"Table {self.table_name} has no unique key on {BLOCK_KEY_ATTRIBUTE}",
            )

        now = _now()
        values = {
            'property_id': block.property_id,
            'host_id': block.host_id,
            'source': block.source,
            'external_id': block.external_id,
            'updated_at': now,
            **block.mutable_fields(),
        }
        insert_only = {
            'id': block.id or str(uuid.uuid4()),
            'created_at': now,
            'created_by': block.created_by,
        }

        names = {}
        attr_values = {}
        assignments = []
        for i, (field_name, value) in enumerate(values.items()):
            names[f"#f{i}"] = field_name
            attr_values[f":v{i}"] = value
            assignments.append(f"#f{i} = :v{i}")
        for i, (field_name, value) in enumerate(insert_only.items()):
            names[f"#i{i}"] = field_name
            attr_values[f":i{i}"] = value
            assignments.append(f"#i{i} = if_not_exists(#i{i}, :i{i})")

        try:
            response = self.table.update_item(
                Key={BLOCK_KEY_ATTRIBUTE: make_block_key(*block.key)},
                UpdateExpression='SET ' + ', '.join(assignments),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=attr_values,
                ReturnValues='ALL_OLD',
            )
        except ClientError as e:
            logger.error(f"Error upserting block {block.external_id}: {e}")
            raise _store_error(e)

        return bool(response.get('Attributes'))

    def find_block(self, property_id: str, source: str, external_id: str) -> Optional[CalendarBlock]:
        block_key = make_block_key(property_id, source, external_id)
        try:
            if self.keyed_on_block:
                item = self.table.get_item(Key={BLOCK_KEY_ATTRIBUTE: block_key}).get('Item')
                return self._item_to_block(item) if item else None

            response = self.table.query(
                IndexName=BLOCK_KEY_INDEX,
                KeyConditionExpression=Key(BLOCK_KEY_ATTRIBUTE).eq(block_key),
            )
        except ClientError as e:
            logger.error(f"Error looking up block {block_key}: {e}")
            raise _store_error(e)

        items = sorted(response.get('Items', []), key=lambda item: item.get('created_at') or '')
        if len(items) > 1:
            logger.warning(f"Found {len(items)} blocks for {block_key}, updating the oldest")
        return self._item_to_block(items[0]) if items else None

    def update_block(self, existing: CalendarBlock, changes: dict) -> None:
        changes = {**changes, 'updated_at': _now()}
        names = {f"#f{i}": name for i, name in enumerate(changes)}
        attr_values = {f":v{i}": value for i, value in enumerate(changes.values())}
        update_expression = 'SET ' + ', '.join(f"#f{i} = :v{i}" for i in range(len(changes)))

        if self.keyed_on_block:
            key = {BLOCK_KEY_ATTRIBUTE: make_block_key(*existing.key)}
        else:
            key = {'id': existing.id}

        try:
            self.table.update_item(
                Key=key,
                UpdateExpression=update_expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=attr_values,
            )
        except ClientError as e:
            logger.error(f"Error updating block {existing.id}: {e}")
            raise _store_error(e)

    def insert_block(self, block: CalendarBlock) -> CalendarBlock:
        now = _now()
        block.id = block.id or str(uuid.uuid4())
        block.created_at = block.created_at or now
        block.updated_at = now

        hash_key = BLOCK_KEY_ATTRIBUTE if self.keyed_on_block else 'id'
        try:
            self.table.put_item(
                Item=self._block_to_item(block),
                ConditionExpression='attribute_not_exists(#k)',
                ExpressionAttributeNames={'#k': hash_key},
            )
        except ClientError as e:
            logger.error(f"Error inserting block {block.external_id}: {e}")
            raise _store_error(e)
        return block

    def _item_to_block(self, item: dict) -> Optional[CalendarBlock]:
        try:
            return CalendarBlock(
                id=item.get('id'),
                property_id=item['property_id'],
                host_id=item.get('host_id'),
                start_date=item['start_date'],
                end_date=item['end_date'],
                reason=item.get('reason', ''),
                source=item['source'],
                external_id=item['external_id'],
                is_active=bool(item.get('is_active', True)),
                created_by=item.get('created_by'),
                created_at=item.get('created_at'),
                updated_at=item.get('updated_at'),
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to CalendarBlock: missing {e}")
            return None

    def _block_to_item(self, block: CalendarBlock) -> dict:
        return {
            'id': block.id,
            BLOCK_KEY_ATTRIBUTE: make_block_key(*block.key),
            'property_id': block.property_id,
            'host_id': block.host_id,
            'start_date': block.start_date,
            'end_date': block.end_date,
            'reason': block.reason,
            'source': block.source,
            'external_id': block.external_id,
            'is_active': block.is_active,
            'created_by': block.created_by,
            'created_at': block.created_at,
            'updated_at': block.updated_at,
        }
