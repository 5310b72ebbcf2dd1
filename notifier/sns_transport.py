"""Forward change signals to an SNS topic for connected clients."""
import json
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from notifier.change_notifier import ChangeSignal

logger = logging.getLogger(__name__)


class SnsChangeListener:
    """Change listener that publishes each signal to an SNS topic."""

    def __init__(self, topic_arn: str, region_name: Optional[str] = None):
        """
        Initialize SNS client.

        Args:
            topic_arn: ARN of the topic clients subscribe to
            region_name: AWS region, defaults to the environment's
        """
        self.topic_arn = topic_arn
        self.sns = boto3.client('sns', region_name=region_name)
        logger.info(f"Initialized SnsChangeListener for topic: {topic_arn}")

    def __call__(self, signal: ChangeSignal) -> None:
        """
        Publish one signal.

        Raises:
            ClientError, BotoCoreError: If SNS rejects the message; the
                notifier logs and isolates the failure
        """
        try:
            self.sns.publish(
                TopicArn=self.topic_arn,
                Message=json.dumps(signal.to_payload()),
                MessageAttributes={
                    'channel': {'DataType': 'String', 'StringValue': signal.channel}
                },
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error publishing {signal.channel} to SNS: {e}")
            raise
