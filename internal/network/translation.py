"""Region/ID translation store.

Records map a source-region resource id (VPC, subnet, security group) to
its target-region counterpart for one (sourceRegion, targetRegion) pair.
The table is keyed by the source ``id`` and carries ``targetId``,
``sourceRegion`` and ``targetRegion`` attributes.  It is written by the
peering process and only read here.

Every lookup filters on the exact region pair.  When several records
match, the last one returned by the store wins.
"""

import logging
from typing import Optional

from boto3.dynamodb.types import TypeDeserializer

from internal.aws.clients import paginate
from internal.models.errors import NotFoundError

logger = logging.getLogger(__name__)

KEY_ID = "id"
KEY_TARGET_ID = "targetId"
KEY_SOURCE_REGION = "sourceRegion"
KEY_TARGET_REGION = "targetRegion"

_deserializer = TypeDeserializer()


def _deserialize(item: dict) -> dict:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


def _last_match(records, source_region: str, target_region: str) -> Optional[dict]:
    result = None
    for record in records:
        if (record.get(KEY_SOURCE_REGION) == source_region
                and record.get(KEY_TARGET_REGION) == target_region):
            result = record
    return result


class TranslationStore:
    def __init__(self, client, table_name: str):
        self._client = client
        self.table_name = table_name

    def _query_by_id(self, source_id: str) -> list[dict]:
        items = paginate(
            self._client, "query", "Items",
            TableName=self.table_name,
            KeyConditionExpression="#id = :id",
            ExpressionAttributeNames={"#id": KEY_ID},
            ExpressionAttributeValues={":id": {"S": source_id}},
        )
        return [_deserialize(i) for i in items]

    def _scan_by_target_id(self, target_id: str) -> list[dict]:
        items = paginate(
            self._client, "scan", "Items",
            TableName=self.table_name,
            FilterExpression="#target = :id",
            ExpressionAttributeNames={"#target": KEY_TARGET_ID},
            ExpressionAttributeValues={":id": {"S": target_id}},
        )
        return [_deserialize(i) for i in items]

    def find_target_id(self, source_id: str, source_region: str, target_region: str) -> str:
        record = _last_match(self._query_by_id(source_id), source_region, target_region)
        if record is None:
            raise NotFoundError(f"Unable to find target ID of {source_id} ({source_region} -> {target_region})")
        return record[KEY_TARGET_ID]

    def find_source_id(self, target_id: str, source_region: str, target_region: str) -> str:
        record = _last_match(self._scan_by_target_id(target_id), source_region, target_region)
        if record is None:
            raise NotFoundError(f"Unable to find source ID of {target_id} ({source_region} -> {target_region})")
        return record[KEY_ID]

    def find_target_vpc_id(self, source_vpc_id: str, source_region: str,
                           target_region: str) -> Optional[str]:
        """Planning lookup: None means the VPC is not peered yet."""
        record = _last_match(self._query_by_id(source_vpc_id), source_region, target_region)
        if record is None:
            logger.info("No target VPC recorded for %s (%s -> %s)", source_vpc_id, source_region, target_region)
            return None
        return record[KEY_TARGET_ID]
