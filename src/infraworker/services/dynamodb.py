"""DynamoDB implementation of the table store.

Every call goes through a botocore client configured with finite connect
and read timeouts and a bounded retry budget, so a hung endpoint surfaces
as ``TableStoreError`` instead of blocking the worker forever.
"""

import logging
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import BillingMode, IndexSpec, KeyAttribute, StoreConfig, TableSpec
from .table_store import (
    IndexDescription,
    Item,
    ResourceInUseError,
    SchemaRejectedError,
    TableDescription,
    TableNotFoundError,
    TableStoreError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _translate(e: ClientError, what: str) -> TableStoreError:
    error = e.response.get("Error", {})
    code = error.get("Code", "")
    message = error.get("Message", str(e))
    if code == "ResourceNotFoundException":
        return TableNotFoundError(f"{what}: {message}")
    if code in ("ResourceInUseException", "LimitExceededException"):
        return ResourceInUseError(f"{what}: {message}")
    if code == "ValidationException":
        if "already exists" in message:
            return ResourceInUseError(f"{what}: {message}")
        return SchemaRejectedError(f"{what}: {message}")
    return TableStoreError(f"{what}: [{code}] {message}")


def _call(what: str, fn: Callable[..., T], **kwargs: Any) -> T:
    try:
        return fn(**kwargs)
    except ClientError as e:
        raise _translate(e, what) from e
    except BotoCoreError as e:
        raise TableStoreError(f"{what}: {e}") from e


def _key_schema(partition_key: KeyAttribute, sort_key: KeyAttribute | None) -> list[dict]:
    schema = [{"AttributeName": partition_key.name, "KeyType": "HASH"}]
    if sort_key is not None:
        schema.append({"AttributeName": sort_key.name, "KeyType": "RANGE"})
    return schema


def _throughput(spec: TableSpec) -> dict[str, int]:
    return {"ReadCapacityUnits": spec.read_capacity, "WriteCapacityUnits": spec.write_capacity}


def _index_request(spec: TableSpec, index: IndexSpec) -> dict[str, Any]:
    projection: dict[str, Any] = {"ProjectionType": index.projection.value}
    if index.non_key_attributes:
        projection["NonKeyAttributes"] = list(index.non_key_attributes)
    request: dict[str, Any] = {
        "IndexName": index.name,
        "KeySchema": _key_schema(index.partition_key, index.sort_key),
        "Projection": projection,
    }
    if spec.billing_mode == BillingMode.PROVISIONED:
        request["ProvisionedThroughput"] = _throughput(spec)
    return request


def _parse_keys(
    key_schema: list[dict], types: dict[str, str]
) -> tuple[KeyAttribute, KeyAttribute | None]:
    partition_key: KeyAttribute | None = None
    sort_key: KeyAttribute | None = None
    for element in key_schema:
        attr = KeyAttribute(
            name=element["AttributeName"], type=types.get(element["AttributeName"], "S")
        )
        if element["KeyType"] == "HASH":
            partition_key = attr
        else:
            sort_key = attr
    if partition_key is None:
        raise TableStoreError("Key schema has no partition key")
    return partition_key, sort_key


def _serialize(item: Item) -> dict[str, Any]:
    return {k: _serializer.serialize(v) for k, v in item.items()}


def _deserialize(item: dict[str, Any]) -> Item:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


class DynamoTableStore:
    """Table store backed by Amazon DynamoDB (or a compatible endpoint)."""

    def __init__(self, config: StoreConfig, client: Any | None = None) -> None:
        self.config = config
        self.client = client if client is not None else self._make_client(config)

    @staticmethod
    def _make_client(config: StoreConfig) -> Any:
        session_kwargs = {}
        if config.region:
            session_kwargs["region_name"] = config.region
        if config.profile:
            session_kwargs["profile_name"] = config.profile
        session = boto3.Session(**session_kwargs)
        botocore_config = Config(
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            retries={"max_attempts": config.max_attempts, "mode": "standard"},
        )
        logger.debug(
            f"Creating DynamoDB client (region={config.region}, endpoint={config.endpoint_url})"
        )
        return session.client("dynamodb", endpoint_url=config.endpoint_url, config=botocore_config)

    # ------------------------------------------------------------------
    # Table lifecycle

    def create_table(self, name: str, spec: TableSpec) -> None:
        request: dict[str, Any] = {
            "TableName": name,
            "KeySchema": _key_schema(spec.partition_key, spec.sort_key),
            "AttributeDefinitions": [
                {"AttributeName": a.name, "AttributeType": a.type}
                for a in spec.attribute_definitions()
            ],
            "BillingMode": spec.billing_mode.value,
        }
        if spec.billing_mode == BillingMode.PROVISIONED:
            request["ProvisionedThroughput"] = _throughput(spec)
        if spec.indexes:
            request["GlobalSecondaryIndexes"] = [_index_request(spec, i) for i in spec.indexes]
        if spec.tags:
            request["Tags"] = [{"Key": k, "Value": v} for k, v in spec.tags.items()]
        _call(f"create table {name}", self.client.create_table, **request)

    def describe_table(self, name: str) -> TableDescription:
        response = _call(f"describe table {name}", self.client.describe_table, TableName=name)
        table = response["Table"]
        types = {
            d["AttributeName"]: d["AttributeType"] for d in table.get("AttributeDefinitions", [])
        }
        partition_key, sort_key = _parse_keys(table["KeySchema"], types)
        indexes = []
        for gsi in table.get("GlobalSecondaryIndexes", []):
            index_pk, index_sk = _parse_keys(gsi["KeySchema"], types)
            indexes.append(
                IndexDescription(
                    name=gsi["IndexName"],
                    status=gsi.get("IndexStatus", "ACTIVE"),
                    partition_key=index_pk,
                    sort_key=index_sk,
                )
            )
        return TableDescription(
            name=table["TableName"],
            status=table["TableStatus"],
            partition_key=partition_key,
            sort_key=sort_key,
            indexes=indexes,
        )

    def delete_table(self, name: str) -> None:
        _call(f"delete table {name}", self.client.delete_table, TableName=name)

    def create_index(self, table: str, spec: TableSpec, index: IndexSpec) -> None:
        definitions = {a.name: a for a in spec.key_attributes()}
        for attr in index.key_attributes():
            definitions.setdefault(attr.name, attr)
        _call(
            f"create index {table}.{index.name}",
            self.client.update_table,
            TableName=table,
            AttributeDefinitions=[
                {"AttributeName": a.name, "AttributeType": a.type} for a in definitions.values()
            ],
            GlobalSecondaryIndexUpdates=[{"Create": _index_request(spec, index)}],
        )

    def delete_index(self, table: str, index_name: str) -> None:
        _call(
            f"delete index {table}.{index_name}",
            self.client.update_table,
            TableName=table,
            GlobalSecondaryIndexUpdates=[{"Delete": {"IndexName": index_name}}],
        )

    def list_tables(self) -> list[str]:
        names: list[str] = []
        kwargs: dict[str, Any] = {}
        while True:
            response = _call("list tables", self.client.list_tables, **kwargs)
            names.extend(response.get("TableNames", []))
            last = response.get("LastEvaluatedTableName")
            if not last:
                return names
            kwargs["ExclusiveStartTableName"] = last

    # ------------------------------------------------------------------
    # Item operations

    def get_item(self, table: str, key: Item) -> Item | None:
        response = _call(
            f"get item from {table}",
            self.client.get_item,
            TableName=table,
            Key=_serialize(key),
            ConsistentRead=True,
        )
        item = response.get("Item")
        return _deserialize(item) if item else None

    def put_item(self, table: str, item: Item) -> None:
        _call(
            f"put item into {table}", self.client.put_item, TableName=table, Item=_serialize(item)
        )

    def update_item(self, table: str, key: Item, updates: Item) -> Item:
        names = {f"#k{i}": name for i, name in enumerate(updates)}
        values = {f":v{i}": _serializer.serialize(v) for i, v in enumerate(updates.values())}
        expression = "SET " + ", ".join(f"#k{i} = :v{i}" for i in range(len(updates)))
        response = _call(
            f"update item in {table}",
            self.client.update_item,
            TableName=table,
            Key=_serialize(key),
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ReturnValues="ALL_NEW",
        )
        return _deserialize(response.get("Attributes", {}))

    def delete_item(self, table: str, key: Item) -> None:
        _call(
            f"delete item from {table}",
            self.client.delete_item,
            TableName=table,
            Key=_serialize(key),
        )

    def query_by_index(self, table: str, index_name: str, key_name: str, value: Any) -> list[Item]:
        return list(
            self._paginate(
                f"query {table}.{index_name}",
                self.client.query,
                TableName=table,
                IndexName=index_name,
                KeyConditionExpression="#k = :v",
                ExpressionAttributeNames={"#k": key_name},
                ExpressionAttributeValues={":v": _serializer.serialize(value)},
            )
        )

    def scan(self, table: str, limit: int | None = None) -> list[Item]:
        items = []
        for item in self._paginate(f"scan {table}", self.client.scan, TableName=table):
            items.append(item)
            if limit is not None and len(items) >= limit:
                break
        return items

    def _paginate(self, what: str, fn: Callable[..., dict], **kwargs: Any) -> Iterator[Item]:
        while True:
            response = _call(what, fn, **kwargs)
            for item in response.get("Items", []):
                yield _deserialize(item)
            last = response.get("LastEvaluatedKey")
            if not last:
                return
            kwargs["ExclusiveStartKey"] = last
