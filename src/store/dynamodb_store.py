"""DynamoDB-backed document store.

One table per collection, partition key ``id``. Lookups by ``id`` are a
``GetItem``; lookups on indexed attributes (key secret, owning account)
go through a GSI query; anything else falls back to a filtered scan.
Counter updates use ``ADD`` so concurrent increments need no
application-level locking.
"""

import asyncio
import uuid
from decimal import Decimal

from src.store.base import DocumentStore, matches, validate_update

# collection -> (attribute, index name) usable for Query
_INDEXES: dict[str, tuple[str, str]] = {
    "client_keys": ("secret_value", "secret_value_index"),
    "backend_configs": ("owner_account_id", "owner_account_index"),
}

# boto3's condition builder emits #n<N> / :v<N>; ours must not collide
_NAME_PREFIX = "#u"
_VALUE_PREFIX = ":u"


def _to_dynamo(value):
    """DynamoDB rejects floats; convert recursively to Decimal."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_dynamo(v) for v in value]
    return value


def _parent_skeletons(update: dict) -> dict[str, dict]:
    """Empty nested maps for every top-level attribute a dotted path goes through.

    ``{"$inc": {"usage.request_count": 1}}`` -> ``{"usage": {}}``
    """
    skeletons: dict[str, dict] = {}
    for fields in update.values():
        for path in fields:
            parts = path.split(".")
            if len(parts) < 2:
                continue
            node = skeletons.setdefault(parts[0], {})
            for part in parts[1:-1]:
                node = node.setdefault(part, {})
    return skeletons


def _error_code(error) -> str:
    return error.response.get("Error", {}).get("Code", "")


class DynamoDBDocumentStore(DocumentStore):
    """Maps collection names onto DynamoDB tables."""

    def __init__(self, tables: dict[str, str], region: str = "us-east-1"):
        self._table_names = tables
        self._region = region
        self._tables: dict[str, object] = {}
        self._resource = None

    def _get_table(self, collection: str):
        """Lazy-init boto3 Table resource per collection."""
        if collection not in self._tables:
            if collection not in self._table_names:
                raise KeyError(f"No DynamoDB table configured for collection '{collection}'")
            if self._resource is None:
                import boto3

                self._resource = boto3.resource("dynamodb", region_name=self._region)
            self._tables[collection] = self._resource.Table(self._table_names[collection])
        return self._tables[collection]

    @staticmethod
    def _condition(filter: dict):
        """AND together equality conditions for every filter field."""
        from boto3.dynamodb.conditions import Attr

        condition = None
        for path, expected in filter.items():
            clause = Attr(path).eq(_to_dynamo(expected))
            condition = clause if condition is None else condition & clause
        return condition

    def _read(self, collection: str, filter: dict, first_only: bool) -> list[dict]:
        from boto3.dynamodb.conditions import Key

        table = self._get_table(collection)

        if "id" in filter:
            item = table.get_item(Key={"id": filter["id"]}).get("Item")
            remaining = {k: v for k, v in filter.items() if k != "id"}
            if item is None or not matches(item, _to_dynamo(remaining)):
                return []
            return [item]

        index = _INDEXES.get(collection)
        kwargs: dict = {}

        if index and index[0] in filter:
            attribute, index_name = index
            remaining = {k: v for k, v in filter.items() if k != attribute}
            kwargs["IndexName"] = index_name
            kwargs["KeyConditionExpression"] = Key(attribute).eq(filter[attribute])
            if remaining:
                kwargs["FilterExpression"] = self._condition(remaining)
            operation = table.query
        else:
            if filter:
                kwargs["FilterExpression"] = self._condition(filter)
            operation = table.scan

        items: list[dict] = []
        while True:
            resp = operation(**kwargs)
            items.extend(resp.get("Items", []))
            if (first_only and items) or "LastEvaluatedKey" not in resp:
                break
            kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]

        return items[:1] if first_only else items

    async def find_one(self, collection: str, filter: dict) -> dict | None:
        items = await asyncio.to_thread(self._read, collection, filter, True)
        return items[0] if items else None

    async def find(self, collection: str, filter: dict) -> list[dict]:
        return await asyncio.to_thread(self._read, collection, filter, False)

    def _put(self, collection: str, document: dict) -> str:
        item = _to_dynamo({k: v for k, v in document.items() if v is not None})
        item.setdefault("id", uuid.uuid4().hex)
        self._get_table(collection).put_item(Item=item)
        return item["id"]

    async def insert_one(self, collection: str, document: dict) -> str:
        return await asyncio.to_thread(self._put, collection, document)

    @staticmethod
    def _build_update(update: dict) -> tuple[str, dict, dict]:
        names: dict[str, str] = {}
        values: dict[str, object] = {}
        clauses: dict[str, list[str]] = {"SET": [], "ADD": []}

        def name_ref(path: str) -> str:
            refs = []
            for part in path.split("."):
                ref = f"{_NAME_PREFIX}{len(names)}"
                names[ref] = part
                refs.append(ref)
            return ".".join(refs)

        for op, fields in update.items():
            for path, value in fields.items():
                value_ref = f"{_VALUE_PREFIX}{len(values)}"
                values[value_ref] = _to_dynamo(value)
                if op == "$set":
                    clauses["SET"].append(f"{name_ref(path)} = {value_ref}")
                else:
                    clauses["ADD"].append(f"{name_ref(path)} {value_ref}")

        expression = " ".join(
            f"{verb} {', '.join(parts)}" for verb, parts in clauses.items() if parts
        )
        return expression, names, values

    def _create_parents(self, table, item_id: str, skeletons: dict[str, dict]) -> None:
        """Add missing map attributes so dotted paths become updatable."""
        from botocore.exceptions import ClientError

        for attribute, skeleton in skeletons.items():
            try:
                table.update_item(
                    Key={"id": item_id},
                    UpdateExpression="SET #parent = :empty",
                    ConditionExpression="attribute_exists(#key) AND attribute_not_exists(#parent)",
                    ExpressionAttributeNames={"#parent": attribute, "#key": "id"},
                    ExpressionAttributeValues={":empty": skeleton},
                )
            except ClientError as e:
                # Already present (or item gone): the retried update decides
                if _error_code(e) != "ConditionalCheckFailedException":
                    raise

    def _update(self, collection: str, filter: dict, update: dict) -> bool:
        if "id" not in filter:
            raise ValueError("DynamoDB update_one requires 'id' in the filter")

        expression, names, values = self._build_update(update)
        kwargs = {
            "Key": {"id": filter["id"]},
            "UpdateExpression": expression,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
        # Only update existing items; extra filter fields become conditions
        from boto3.dynamodb.conditions import Attr
        from botocore.exceptions import ClientError

        condition = self._condition({k: v for k, v in filter.items() if k != "id"})
        exists = Attr("id").exists()
        kwargs["ConditionExpression"] = exists if condition is None else exists & condition

        table = self._get_table(collection)
        skeletons = _parent_skeletons(update)
        for attempt in range(2):
            try:
                table.update_item(**kwargs)
                return True
            except ClientError as e:
                code = _error_code(e)
                if code == "ConditionalCheckFailedException":
                    return False
                # A dotted path through a missing map is a ValidationException
                if code != "ValidationException" or not skeletons or attempt:
                    raise
                self._create_parents(table, filter["id"], skeletons)

    async def update_one(self, collection: str, filter: dict, update: dict) -> bool:
        validate_update(update)
        return await asyncio.to_thread(self._update, collection, filter, update)

    async def close(self) -> None:
        # boto3 resources don't need explicit cleanup
        self._tables.clear()
        self._resource = None
