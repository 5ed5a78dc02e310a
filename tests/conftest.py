"""Shared fixtures for calendar sync tests."""
import copy
import uuid
from datetime import date

import boto3
import pytest
from moto import mock_aws

from processor.models import CalendarBlock
from storage.block_store import (
    NO_UNIQUE_CONSTRAINT,
    BlockStore,
    StoreError,
)

TODAY = date(2025, 9, 1)


class InMemoryBlockStore(BlockStore):
    """
    Block store fake.

    ``supports_upsert=False`` behaves like a table without the composite
    unique key; ``upsert_errors`` / ``write_errors`` queue StoreError codes
    raised by the next upsert or fallback write.
    """

    def __init__(self, supports_upsert=True):
        self.supports_upsert = supports_upsert
        self.rows = []
        self.upsert_errors = []
        self.write_errors = []
        self.calls = []

    def upsert_block(self, block):
        self.calls.append('upsert')
        if self.upsert_errors:
            raise StoreError(self.upsert_errors.pop(0))
        if not self.supports_upsert:
            raise StoreError(NO_UNIQUE_CONSTRAINT)
        existing = self._find(block.key)
        if existing:
            for name, value in block.mutable_fields().items():
                setattr(existing, name, value)
            return True
        self._insert(block)
        return False

    def find_block(self, property_id, source, external_id):
        self.calls.append('find')
        row = self._find((property_id, source, external_id))
        return copy.copy(row) if row else None

    def update_block(self, existing, changes):
        self.calls.append('update')
        if self.write_errors:
            raise StoreError(self.write_errors.pop(0))
        row = next(r for r in self.rows if r.id == existing.id)
        for name, value in changes.items():
            setattr(row, name, value)

    def insert_block(self, block):
        self.calls.append('insert')
        if self.write_errors:
            raise StoreError(self.write_errors.pop(0))
        return self._insert(block)

    def active_rows(self):
        return [r for r in self.rows if r.is_active]

    def _find(self, key):
        return next((r for r in self.rows if r.key == key), None)

    def _insert(self, block):
        row = copy.copy(block)
        row.id = row.id or str(uuid.uuid4())
        self.rows.append(row)
        return row


@pytest.fixture
def block_store():
    return InMemoryBlockStore()


@pytest.fixture
def legacy_block_store():
    return InMemoryBlockStore(supports_upsert=False)


@pytest.fixture
def aws_credentials():
    """Fake credentials so boto3 never reaches a real account."""
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv('AWS_ACCESS_KEY_ID', 'testing')
        mp.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
        mp.setenv('AWS_DEFAULT_REGION', 'us-east-1')
        yield


@pytest.fixture
def dynamodb(aws_credentials):
    with mock_aws():
        yield boto3.resource('dynamodb', region_name='us-east-1')


def create_keyed_blocks_table(dynamodb, name='calendar_blocks'):
    return dynamodb.create_table(
        TableName=name,
        KeySchema=[{'AttributeName': 'block_key', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'block_key', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST',
    )


def create_legacy_blocks_table(dynamodb, name='calendar_blocks'):
    return dynamodb.create_table(
        TableName=name,
        KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[
            {'AttributeName': 'id', 'AttributeType': 'S'},
            {'AttributeName': 'block_key', 'AttributeType': 'S'},
        ],
        GlobalSecondaryIndexes=[
            {
                'IndexName': 'block-key-index',
                'KeySchema': [{'AttributeName': 'block_key', 'KeyType': 'HASH'}],
                'Projection': {'ProjectionType': 'ALL'},
            }
        ],
        BillingMode='PAY_PER_REQUEST',
    )


def create_registration_tables(dynamodb, feeds='ical_urls', accounts='channel_accounts'):
    tables = []
    for name in (feeds, accounts):
        tables.append(dynamodb.create_table(
            TableName=name,
            KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'id', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST',
        ))
    return tables


def make_block(**overrides):
    values = dict(
        property_id='prop-1',
        host_id='host-1',
        start_date='2025-09-10',
        end_date='2025-09-15',
        reason='Reserved',
        source='ical_airbnb',
        external_id='uid-1@airbnb.com',
        is_active=True,
    )
    values.update(overrides)
    return CalendarBlock(**values)
