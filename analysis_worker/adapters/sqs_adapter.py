"""
AWS SQS adapter for job completion notifications.

Pulls Rekognition completion messages from an SQS queue subscribed to the
notification topic. Messages are deleted only after the caller has applied
them, so a crash before that re-delivers the notification.
"""

import boto3
import logging
from dataclasses import dataclass
from typing import List
from botocore.exceptions import BotoCoreError, ClientError

from ..models import Notification
from ..notifications import parse_queue_body

logger = logging.getLogger("analysis_worker")


@dataclass
class QueuedNotification:
    """A notification together with the handle needed to acknowledge it"""
    notification: Notification
    receipt_handle: str


class SQSNotificationSource:
    """AWS SQS source of job completion notifications"""

    def __init__(self, queue_url: str, region: str = "us-east-1", max_messages: int = 10,
                 wait_time: int = 20, client=None):
        self.queue_url = queue_url
        self.region = region
        self.max_messages = max_messages
        self.wait_time = wait_time
        self.sqs = client

    def connect(self):
        """Initialize SQS client"""
        if self.sqs is not None:
            return
        try:
            self.sqs = boto3.client('sqs', region_name=self.region)
            logger.info(f"SQS notification source connected to queue: {self.queue_url}")
        except Exception as e:
            logger.error(f"Failed to connect to SQS: {e}")
            raise

    def receive(self) -> List[QueuedNotification]:
        """Poll SQS for notification messages"""
        if not self.sqs:
            raise RuntimeError("SQS client not initialized. Call connect() first.")

        try:
            response = self.sqs.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=self.max_messages,
                WaitTimeSeconds=self.wait_time,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"SQS error receiving notifications: {e}")
            return []

        received = []
        for message in response.get('Messages', []):
            receipt_handle = message['ReceiptHandle']
            try:
                notification = parse_queue_body(message['Body'])
            except (ValueError, KeyError) as e:
                # json.JSONDecodeError and pydantic.ValidationError are ValueErrors
                logger.error(f"Failed to parse SQS message {message.get('MessageId')}: {e}")
                # Delete malformed message
                self.acknowledge(receipt_handle)
                continue
            received.append(QueuedNotification(notification=notification, receipt_handle=receipt_handle))

        if received:
            logger.info(f"Received {len(received)} job notifications from SQS")
        return received

    def acknowledge(self, receipt_handle: str) -> None:
        """Delete a processed message from the queue"""
        try:
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"SQS error deleting message: {e}")

    def close(self):
        """Close SQS connection"""
        self.sqs = None
        logger.info("SQS notification source closed")
