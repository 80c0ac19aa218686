# tests/test_dynamodb_service.py
from decimal import Decimal

import pytest
from botocore.exceptions import ClientError

from backend.lib.dynamodb_service import DynamoDBService, client_config, record_key
from backend.lib.meter_core.errors import SyncPushError


def client_error(operation):
    return ClientError({'Error': {'Code': 'ProvisionedThroughputExceededException', 'Message': 'slow down'}},
                       operation)


class FakeTable:
    def __init__(self, pages=None):
        self.pages = list(pages or [])
        self.put_items = []
        self.queries = []
        self.deleted = []
        self.fail = False

    def put_item(self, Item):
        if self.fail:
            raise client_error('PutItem')
        self.put_items.append(Item)

    def query(self, **kwargs):
        if self.fail:
            raise client_error('Query')
        self.queries.append(kwargs)
        return self.pages.pop(0)

    def delete_item(self, Key):
        self.deleted.append(Key)

    def get_item(self, Key):
        return {}


class FakeResource:
    def __init__(self, table):
        self.table = table
        self.table_names = []

    def Table(self, name):
        self.table_names.append(name)
        return self.table


@pytest.fixture
def table():
    return FakeTable()


@pytest.fixture
def service(table):
    return DynamoDBService(table_name="Records", region="eu-west-1", resource=FakeResource(table))


def test_record_key_combines_entity_and_id():
    assert record_key("bills", "b-1") == "bills#b-1"


def test_client_config_sets_timeouts():
    config = client_config(7)
    assert config.connect_timeout == 7
    assert config.read_timeout == 7


def test_put_record_adds_table_keys(service, table):
    item = {'id': "r-1", 'consumption': Decimal("4.5")}

    service.put_record("u-1", "meter_readings", item)

    assert table.put_items == [{'id': "r-1", 'consumption': Decimal("4.5"),
                                'user_id': "u-1", 'record_key': "meter_readings#r-1"}]
    assert 'record_key' not in item


def test_get_records_follows_pages_and_strips_sort_key(table, service):
    table.pages = [
        {'Items': [{'id': "r-1", 'record_key': "meter_readings#r-1"}],
         'LastEvaluatedKey': {'user_id': "u-1", 'record_key': "meter_readings#r-1"}},
        {'Items': [{'id': "r-2", 'record_key': "meter_readings#r-2"}]},
    ]

    items = service.get_records("u-1", "meter_readings")

    assert items == [{'id': "r-1"}, {'id': "r-2"}]
    assert 'ExclusiveStartKey' not in table.queries[0]
    assert table.queries[1]['ExclusiveStartKey']['record_key'] == "meter_readings#r-1"


def test_aws_errors_become_sync_errors(service, table):
    table.fail = True
    with pytest.raises(SyncPushError) as excinfo:
        service.put_record("u-1", "bills", {'id': "b-1"})
    assert excinfo.value.record_id == "b-1"
    with pytest.raises(SyncPushError):
        service.get_records("u-1", "bills")


def test_delete_record_uses_composite_key(service, table):
    service.delete_record("u-1", "pricing_tiers", "t-1")
    assert table.deleted == [{'user_id': "u-1", 'record_key': "pricing_tiers#t-1"}]


def test_missing_user_document_is_none(service):
    assert service.get_user("u-1") is None
