"""
DynamoDB implementation of the record store used when running in AWS.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from takeoff.clients.sqlite_store import VersionConflictError
from takeoff.core.config import AWSSettings


def _to_dynamo(item: Dict[str, Any]) -> Dict[str, Any]:
    # DynamoDB rejects Python floats.
    return json.loads(json.dumps(item), parse_float=Decimal)


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, list):
        return [_from_dynamo(entry) for entry in value]
    if isinstance(value, dict):
        return {key: _from_dynamo(entry) for key, entry in value.items()}
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


class DynamoDBClient:
    """Same interface as :class:`SQLiteStore` backed by a single table."""

    def __init__(self, settings: AWSSettings) -> None:
        if not settings.dynamodb_table_name:
            raise ValueError("DYNAMODB_TABLE_NAME is required for the dynamodb backend")
        self._settings = settings
        self._resource = boto3.resource("dynamodb", region_name=settings.region_name)
        self._table = self._resource.Table(settings.dynamodb_table_name)

    def put_item(
        self, item: Dict[str, Any], *, expected_version: Optional[int] = None
    ) -> None:
        """Put an item, optionally guarded by the stored ``version`` attribute."""
        if not item.get("pk") or not item.get("sk"):
            raise ValueError("Item must include 'pk' and 'sk' keys")
        kwargs: Dict[str, Any] = {"Item": _to_dynamo(item)}
        if expected_version == 0:
            kwargs["ConditionExpression"] = Attr("pk").not_exists()
        elif expected_version is not None:
            kwargs["ConditionExpression"] = Attr("version").eq(expected_version)
        try:
            self._table.put_item(**kwargs)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise VersionConflictError(
                    f"Record {item['pk']}/{item['sk']} is not at version {expected_version}"
                ) from exc
            raise

    def get_item(
        self, *, partition_key: str, sort_key: str
    ) -> Optional[Dict[str, Any]]:
        response = self._table.get_item(Key={"pk": partition_key, "sk": sort_key})
        item = response.get("Item")
        return _from_dynamo(item) if item is not None else None

    def list_items_with_prefix(
        self, *, partition_key: str, sort_key_prefix: str
    ) -> list[Dict[str, Any]]:
        """Query every item under ``partition_key`` whose sort key starts with the prefix."""
        condition = Key("pk").eq(partition_key) & Key("sk").begins_with(sort_key_prefix)
        items: list[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {"KeyConditionExpression": condition}
        while True:
            response = self._table.query(**kwargs)
            items.extend(_from_dynamo(entry) for entry in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key


__all__ = ["DynamoDBClient"]
