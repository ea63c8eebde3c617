"""
AWS DynamoDB adapter for the record store.

One item per video id with the job tickets embedded as a map attribute.
Every status transition and every ticket write is a conditional update,
which is the only concurrency control between racing workers.

Ticket payloads and the report are stored zlib-compressed as binary
attributes; an item, tickets and report included, is capped at 400 KB.
"""

import json
import logging
import zlib
from typing import Optional, Dict, Any, List

import boto3
from boto3.dynamodb.types import Binary, TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from .base import RecordStore
from ..errors import NotFound, PayloadTooLarge, StoreConflict
from ..models import AnalysisRecord, JobTicket, MUTABLE_RECORD_FIELDS, TICKET_PENDING

logger = logging.getLogger("analysis_worker")


# Record field -> item attribute
FIELD_ATTRIBUTES = {
    'status': 'status',
    'completed_at': 'completedAt',
    'error': 'error',
    'report': 'analysisResults',
}

CONDITION_FAILED = "ConditionalCheckFailedException"
VALIDATION_FAILED = "ValidationException"

# DynamoDB item size limit
MAX_ITEM_BYTES = 400 * 1024


def pack(text: str) -> bytes:
    return zlib.compress(text.encode('utf-8'))


def unpack(value) -> str:
    data = value.value if isinstance(value, Binary) else value
    return zlib.decompress(data).decode('utf-8')


def _is_item_too_large(error: ClientError) -> bool:
    details = error.response.get('Error', {})
    return details.get('Code') == VALIDATION_FAILED and 'size' in (details.get('Message') or '').lower()


class DynamoDBRecordStore(RecordStore):
    """DynamoDB implementation of the record store"""

    def __init__(self, table_name: str, region: str = "us-east-1",
                 status_index: Optional[str] = "StatusIndex", client=None):
        self.table_name = table_name
        self.region = region
        self.status_index = status_index
        self.dynamodb = client
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    def connect(self):
        """Initialize DynamoDB client"""
        if self.dynamodb is not None:
            return
        try:
            self.dynamodb = boto3.client('dynamodb', region_name=self.region)
            logger.info(f"DynamoDB record store connected to table: {self.table_name}")
        except Exception as e:
            logger.error(f"Failed to connect to DynamoDB: {e}")
            raise

    def _key(self, video_id: str) -> Dict[str, Any]:
        return {'videoId': {'S': video_id}}

    def _ticket_item(self, ticket: JobTicket) -> Dict[str, Any]:
        item = {
            'kind': ticket.kind,
            'jobId': ticket.job_id,
            'status': ticket.status,
            'payload': pack(json.dumps(ticket.payload, sort_keys=True)) if ticket.payload is not None else None,
            'message': ticket.message,
            'updatedAt': ticket.updated_at,
        }
        return {key: value for key, value in item.items() if value is not None}

    def _to_item(self, record: AnalysisRecord) -> Dict[str, Any]:
        item = {
            'videoId': record.video_id,
            'status': record.status,
            'createdAt': record.created_at,
            'completedAt': record.completed_at,
            'error': record.error,
            'analysisResults': pack(record.report) if record.report is not None else None,
            'videoKey': record.video_key,
            'bucketName': record.bucket,
            'analysisTypes': list(record.expected_kinds),
            'tickets': {kind: self._ticket_item(ticket) for kind, ticket in record.tickets.items()},
        }
        return {
            key: self._serializer.serialize(value)
            for key, value in item.items()
            if value is not None
        }

    def _from_item(self, item: Dict[str, Any]) -> AnalysisRecord:
        data = {key: self._deserializer.deserialize(value) for key, value in item.items()}

        tickets = {}
        for kind, ticket in (data.get('tickets') or {}).items():
            payload = ticket.get('payload')
            tickets[kind] = JobTicket(
                kind=kind,
                job_id=ticket.get('jobId'),
                status=ticket.get('status', TICKET_PENDING),
                payload=json.loads(unpack(payload)) if payload is not None else None,
                message=ticket.get('message'),
                updated_at=ticket.get('updatedAt'),
            )

        return AnalysisRecord(
            video_id=data['videoId'],
            status=data['status'],
            created_at=data.get('createdAt'),
            video_key=data.get('videoKey'),
            bucket=data.get('bucketName'),
            completed_at=data.get('completedAt'),
            error=data.get('error'),
            report=unpack(data['analysisResults']) if data.get('analysisResults') is not None else None,
            expected_kinds=list(data.get('analysisTypes') or []),
            tickets=tickets,
        )

    def create(self, record: AnalysisRecord) -> None:
        try:
            self.dynamodb.put_item(
                TableName=self.table_name,
                Item=self._to_item(record),
                ConditionExpression="attribute_not_exists(videoId)",
            )
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == CONDITION_FAILED:
                raise StoreConflict(record.video_id) from e
            raise
        logger.info(f"Created analysis record {record.video_id}")

    def get(self, video_id: str) -> Optional[AnalysisRecord]:
        response = self.dynamodb.get_item(
            TableName=self.table_name,
            Key=self._key(video_id),
            ConsistentRead=True,
        )
        item = response.get('Item')
        return self._from_item(item) if item else None

    def conditional_update(self, video_id: str, expected_status: str, changes: Dict[str, Any]) -> AnalysisRecord:
        unknown = set(changes) - MUTABLE_RECORD_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        names = {'#status': 'status'}
        values = {':expected': {'S': expected_status}}
        assignments = []
        for i, (field, value) in enumerate(changes.items()):
            if field == 'report' and value is not None:
                value = pack(value)
                self._check_size(video_id, len(value))
            names[f'#f{i}'] = FIELD_ATTRIBUTES[field]
            values[f':v{i}'] = self._serializer.serialize(value)
            assignments.append(f'#f{i} = :v{i}')

        try:
            response = self.dynamodb.update_item(
                TableName=self.table_name,
                Key=self._key(video_id),
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression="attribute_exists(videoId) AND #status = :expected",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_item_too_large(e):
                raise PayloadTooLarge(video_id) from e
            if e.response.get('Error', {}).get('Code') != CONDITION_FAILED:
                raise
            if self.get(video_id) is None:
                raise NotFound(video_id) from e
            raise StoreConflict(video_id, expected_status) from e

        return self._from_item(response['Attributes'])

    def _check_size(self, video_id: str, size_bytes: int) -> None:
        if size_bytes > MAX_ITEM_BYTES:
            raise PayloadTooLarge(video_id, size_bytes, MAX_ITEM_BYTES)

    def save_ticket(self, video_id: str, ticket: JobTicket) -> bool:
        """
        Write a ticket behind the overwrite guard.

        Raises:
            PayloadTooLarge: If the compressed payload cannot fit in the item
        """
        item = self._ticket_item(ticket)
        if 'payload' in item:
            self._check_size(video_id, len(item['payload']))

        try:
            self.dynamodb.update_item(
                TableName=self.table_name,
                Key=self._key(video_id),
                UpdateExpression="SET tickets.#kind = :ticket",
                ConditionExpression=(
                    "attribute_exists(videoId) AND ("
                    "attribute_not_exists(tickets.#kind) "
                    "OR tickets.#kind.#ticket_status = :pending "
                    "OR (tickets.#kind.#ticket_status = :status AND attribute_not_exists(tickets.#kind.#payload)))"
                ),
                ExpressionAttributeNames={'#kind': ticket.kind, '#ticket_status': 'status', '#payload': 'payload'},
                ExpressionAttributeValues={
                    ':ticket': self._serializer.serialize(item),
                    ':pending': {'S': TICKET_PENDING},
                    ':status': {'S': ticket.status},
                },
            )
            return True
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == CONDITION_FAILED:
                logger.debug(f"Skipped {ticket.kind} ticket write for {video_id}: guard rejected it")
                return False
            if _is_item_too_large(e):
                raise PayloadTooLarge(video_id) from e
            raise

    def list_records(self, status: Optional[str] = None) -> List[AnalysisRecord]:
        params: Dict[str, Any] = {'TableName': self.table_name}
        if status and self.status_index:
            operation = self.dynamodb.query
            params.update(
                IndexName=self.status_index,
                KeyConditionExpression="#status = :status",
                ExpressionAttributeNames={'#status': 'status'},
                ExpressionAttributeValues={':status': {'S': status}},
            )
        else:
            operation = self.dynamodb.scan
            if status:
                params.update(
                    FilterExpression="#status = :status",
                    ExpressionAttributeNames={'#status': 'status'},
                    ExpressionAttributeValues={':status': {'S': status}},
                )

        records = []
        while True:
            response = operation(**params)
            records.extend(self._from_item(item) for item in response.get('Items', []))
            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                break
            params['ExclusiveStartKey'] = last_key
        return records

    def close(self):
        """Drop DynamoDB client"""
        self.dynamodb = None
        logger.info("DynamoDB record store closed")
