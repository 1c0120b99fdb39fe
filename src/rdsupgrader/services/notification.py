"""Completion notification through SNS."""

from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from rdsupgrader.errors import ProviderCallError


class NotificationService:
    SUBJECT_LIMIT = 100

    def __init__(self, sns_client, logger):
        self.client = sns_client
        self.logger = logger

    def publish(self, topic_arn: str, subject: str, message: str) -> Optional[str]:
        try:
            response = self.client.publish(
                TopicArn=topic_arn,
                Subject=subject[: self.SUBJECT_LIMIT],
                Message=message,
            )
        except (ClientError, BotoCoreError) as exc:
            raise ProviderCallError(
                f"Could not publish notification to {topic_arn}: {exc}",
                operation="publish",
            ) from exc

        message_id = response.get("MessageId")
        self.logger.info("Notification sent to %s (message id %s)", topic_arn, message_id)
        return message_id
