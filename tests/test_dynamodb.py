"""Tests for the DynamoDB table store (client mocked)."""

from decimal import Decimal
from unittest import mock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from infraworker.config import BillingMode, IndexSpec, KeyAttribute, StoreConfig, TableSpec
from infraworker.services import (
    DynamoTableStore,
    ResourceInUseError,
    SchemaRejectedError,
    TableNotFoundError,
    TableStoreError,
)


def client_error(code: str, message: str = "boom", operation: str = "CreateTable") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


@pytest.fixture
def client() -> mock.MagicMock:
    return mock.MagicMock()


@pytest.fixture
def dynamo(client: mock.MagicMock) -> DynamoTableStore:
    return DynamoTableStore(StoreConfig(region="us-east-1"), client=client)


@pytest.fixture
def orders() -> TableSpec:
    return TableSpec(
        name="orders",
        partition_key=KeyAttribute(name="id"),
        sort_key=KeyAttribute(name="created", type="N"),
        indexes=[
            IndexSpec(
                name="customer-index",
                partition_key=KeyAttribute(name="customer"),
                sort_key=KeyAttribute(name="created", type="N"),
            )
        ],
        tags={"CreatedBy": "infrastructure-worker"},
    )


@pytest.mark.unit
class TestErrorMapping:
    """ClientError codes map onto store errors."""

    @pytest.mark.parametrize(
        "code,message,expected",
        [
            ("ResourceNotFoundException", "missing", TableNotFoundError),
            ("ResourceInUseException", "in use", ResourceInUseError),
            ("LimitExceededException", "too many", ResourceInUseError),
            ("ValidationException", "Index already exists", ResourceInUseError),
            ("ValidationException", "bad key", SchemaRejectedError),
            ("ThrottlingException", "slow down", TableStoreError),
        ],
    )
    def test_client_errors(self, dynamo, client, code, message, expected) -> None:
        """Each error code becomes the matching store error."""
        client.describe_table.side_effect = client_error(code, message, "DescribeTable")
        with pytest.raises(expected) as exc_info:
            dynamo.describe_table("users")
        assert message in str(exc_info.value)

    def test_unclassified_error(self, dynamo, client) -> None:
        """Unclassified errors are plain TableStoreError."""
        client.delete_table.side_effect = client_error("ThrottlingException")
        with pytest.raises(TableStoreError) as exc_info:
            dynamo.delete_table("users")
        assert type(exc_info.value) is TableStoreError
        assert "[ThrottlingException]" in str(exc_info.value)

    def test_botocore_errors(self, dynamo, client) -> None:
        """Connection failures become TableStoreError."""
        client.list_tables.side_effect = EndpointConnectionError(endpoint_url="http://x")
        with pytest.raises(TableStoreError):
            dynamo.list_tables()


@pytest.mark.unit
class TestTableRequests:
    """Request shapes sent to DynamoDB."""

    def test_create_table(self, dynamo, client, orders) -> None:
        """Create requests carry keys, attribute definitions, indexes and tags."""
        dynamo.create_table("dev_orders", orders)
        kwargs = client.create_table.call_args.kwargs

        assert kwargs["TableName"] == "dev_orders"
        assert kwargs["KeySchema"] == [
            {"AttributeName": "id", "KeyType": "HASH"},
            {"AttributeName": "created", "KeyType": "RANGE"},
        ]
        assert kwargs["AttributeDefinitions"] == [
            {"AttributeName": "id", "AttributeType": "S"},
            {"AttributeName": "created", "AttributeType": "N"},
            {"AttributeName": "customer", "AttributeType": "S"},
        ]
        assert kwargs["BillingMode"] == "PAY_PER_REQUEST"
        assert "ProvisionedThroughput" not in kwargs
        assert kwargs["GlobalSecondaryIndexes"][0]["IndexName"] == "customer-index"
        assert kwargs["GlobalSecondaryIndexes"][0]["Projection"] == {"ProjectionType": "ALL"}
        assert kwargs["Tags"] == [{"Key": "CreatedBy", "Value": "infrastructure-worker"}]

    def test_create_provisioned_table(self, dynamo, client, orders) -> None:
        """Provisioned tables send throughput for the table and each index."""
        spec = orders.model_copy(
            update={"billing_mode": BillingMode.PROVISIONED, "read_capacity": 10}
        )
        dynamo.create_table("orders", spec)
        kwargs = client.create_table.call_args.kwargs
        throughput = {"ReadCapacityUnits": 10, "WriteCapacityUnits": 5}
        assert kwargs["ProvisionedThroughput"] == throughput
        assert kwargs["GlobalSecondaryIndexes"][0]["ProvisionedThroughput"] == throughput

    def test_describe_table(self, dynamo, client) -> None:
        """Descriptions are parsed into key attributes and index states."""
        client.describe_table.return_value = {
            "Table": {
                "TableName": "orders",
                "TableStatus": "ACTIVE",
                "KeySchema": [
                    {"AttributeName": "id", "KeyType": "HASH"},
                    {"AttributeName": "created", "KeyType": "RANGE"},
                ],
                "AttributeDefinitions": [
                    {"AttributeName": "id", "AttributeType": "S"},
                    {"AttributeName": "created", "AttributeType": "N"},
                    {"AttributeName": "customer", "AttributeType": "S"},
                ],
                "GlobalSecondaryIndexes": [
                    {
                        "IndexName": "customer-index",
                        "IndexStatus": "CREATING",
                        "KeySchema": [{"AttributeName": "customer", "KeyType": "HASH"}],
                    }
                ],
            }
        }
        desc = dynamo.describe_table("orders")
        assert desc.active
        assert desc.partition_key == KeyAttribute(name="id")
        assert desc.sort_key == KeyAttribute(name="created", type="N")
        index = desc.index("customer-index")
        assert index is not None
        assert index.status == "CREATING"
        assert not index.active
        assert index.sort_key is None
        client.describe_table.assert_called_once_with(TableName="orders")

    def test_create_index(self, dynamo, client, orders) -> None:
        """Index creation goes through update_table with its attribute definitions."""
        dynamo.create_index("orders", orders, orders.indexes[0])
        kwargs = client.update_table.call_args.kwargs
        assert kwargs["TableName"] == "orders"
        names = [d["AttributeName"] for d in kwargs["AttributeDefinitions"]]
        assert names == ["id", "created", "customer"]
        create = kwargs["GlobalSecondaryIndexUpdates"][0]["Create"]
        assert create["IndexName"] == "customer-index"

    def test_delete_index(self, dynamo, client) -> None:
        """Index deletion goes through update_table."""
        dynamo.delete_index("orders", "customer-index")
        client.update_table.assert_called_once_with(
            TableName="orders",
            GlobalSecondaryIndexUpdates=[{"Delete": {"IndexName": "customer-index"}}],
        )

    def test_list_tables_paginates(self, dynamo, client) -> None:
        """All pages of table names are collected."""
        client.list_tables.side_effect = [
            {"TableNames": ["a", "b"], "LastEvaluatedTableName": "b"},
            {"TableNames": ["c"]},
        ]
        assert dynamo.list_tables() == ["a", "b", "c"]
        assert client.list_tables.call_args_list[1].kwargs == {"ExclusiveStartTableName": "b"}


@pytest.mark.unit
class TestItemRequests:
    """Item operations serialize through the DynamoDB type system."""

    def test_get_item(self, dynamo, client) -> None:
        """Reads are consistent and deserialized."""
        client.get_item.return_value = {"Item": {"id": {"S": "u1"}, "age": {"N": "42"}}}
        item = dynamo.get_item("users", {"id": "u1"})
        assert item == {"id": "u1", "age": Decimal("42")}
        kwargs = client.get_item.call_args.kwargs
        assert kwargs["Key"] == {"id": {"S": "u1"}}
        assert kwargs["ConsistentRead"] is True

    def test_get_missing_item(self, dynamo, client) -> None:
        """A missing item reads as None."""
        client.get_item.return_value = {}
        assert dynamo.get_item("users", {"id": "nope"}) is None

    def test_put_item(self, dynamo, client) -> None:
        """Items are serialized on write."""
        dynamo.put_item("users", {"id": "u1", "email": "a@example.com"})
        client.put_item.assert_called_once_with(
            TableName="users", Item={"id": {"S": "u1"}, "email": {"S": "a@example.com"}}
        )

    def test_update_item(self, dynamo, client) -> None:
        """Updates use placeholder names and return the new item."""
        client.update_item.return_value = {"Attributes": {"id": {"S": "u1"}, "name": {"S": "x"}}}
        assert dynamo.update_item("users", {"id": "u1"}, {"name": "x"}) == {
            "id": "u1",
            "name": "x",
        }
        kwargs = client.update_item.call_args.kwargs
        assert kwargs["UpdateExpression"] == "SET #k0 = :v0"
        assert kwargs["ExpressionAttributeNames"] == {"#k0": "name"}
        assert kwargs["ExpressionAttributeValues"] == {":v0": {"S": "x"}}
        assert kwargs["ReturnValues"] == "ALL_NEW"

    def test_query_by_index_paginates(self, dynamo, client) -> None:
        """Queries follow LastEvaluatedKey across pages."""
        client.query.side_effect = [
            {"Items": [{"id": {"S": "u1"}}], "LastEvaluatedKey": {"id": {"S": "u1"}}},
            {"Items": [{"id": {"S": "u2"}}]},
        ]
        items = dynamo.query_by_index("users", "email-index", "email", "a@example.com")
        assert items == [{"id": "u1"}, {"id": "u2"}]
        first = client.query.call_args_list[0].kwargs
        assert first["IndexName"] == "email-index"
        assert first["ExpressionAttributeNames"] == {"#k": "email"}
        assert client.query.call_args_list[1].kwargs["ExclusiveStartKey"] == {"id": {"S": "u1"}}

    def test_scan_limit(self, dynamo, client) -> None:
        """Scans stop once the limit is reached."""
        client.scan.return_value = {
            "Items": [{"id": {"S": "a"}}, {"id": {"S": "b"}}, {"id": {"S": "c"}}]
        }
        assert dynamo.scan("users", limit=2) == [{"id": "a"}, {"id": "b"}]


@pytest.mark.unit
class TestClientConfig:
    """Client construction."""

    def test_client_uses_timeouts_and_retries(self) -> None:
        """The boto3 client gets finite timeouts and bounded retries."""
        config = StoreConfig(
            region="eu-west-1",
            endpoint_url="http://localhost:8000",
            connect_timeout=2,
            read_timeout=10,
            max_attempts=4,
        )
        with mock.patch("infraworker.services.dynamodb.boto3.Session") as session_cls:
            DynamoTableStore(config)

        session_cls.assert_called_once_with(region_name="eu-west-1")
        call = session_cls.return_value.client.call_args
        assert call.args == ("dynamodb",)
        assert call.kwargs["endpoint_url"] == "http://localhost:8000"
        botocore_config = call.kwargs["config"]
        assert botocore_config.connect_timeout == 2
        assert botocore_config.read_timeout == 10
        assert botocore_config.retries == {"max_attempts": 4, "mode": "standard"}
