"""Shared helpers for the DynamoDB-backed stores.

The boto3 resource API rejects Python floats and returns every number as a
Decimal. Records are converted on the way in and out so the dataclasses
only ever see plain ints and floats.
"""

import json
from decimal import Decimal
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError


def to_dynamodb_item(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a serialised record to a DynamoDB-safe item."""
    return json.loads(json.dumps(data, default=str), parse_float=Decimal)


def from_dynamodb_item(value: Any) -> Any:
    """Convert Decimals in an item back to ints and floats."""
    if isinstance(value, dict):
        return {k: from_dynamodb_item(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamodb_item(v) for v in value]
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def strip_keys(item: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    """Remove DynamoDB-specific key attributes from an item."""
    for key in keys:
        item.pop(key, None)
    return item


def is_conditional_check_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def dynamodb_table(table_name: str, region: Optional[str] = None):
    """Return a boto3 Table resource."""
    import boto3
    dynamodb = boto3.resource("dynamodb", region_name=region)
    return dynamodb.Table(table_name)
