from __future__ import annotations

import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel


logger = logging.getLogger(__name__)


class ChangeEvent(BaseModel):
    """A mirrored object that was created or replaced."""

    bucket: str
    key: str


class ChangeNotifier:
    """
    Fire-and-forget publisher of `ChangeEvent`s to an SNS topic.

    Notes
    - With no `topic_arn` the notifier is disabled and `publish` is a no-op,
      so deployments without a message bus need no special casing.
    - Publish failures are logged and dropped; a missed notification never
      fails the upload that caused it.
    """

    def __init__(
        self,
        topic_arn: Optional[str] = None,
        *,
        sns: Optional[object] = None,
        region_name: Optional[str] = None,
    ) -> None:
        self._topic_arn = topic_arn or None
        self._sns = sns
        if self._topic_arn and self._sns is None:
            self._sns = boto3.client("sns", region_name=region_name)

    @property
    def enabled(self) -> bool:
        return self._topic_arn is not None

    def publish(self, bucket: str, key: str) -> None:
        if not self.enabled:
            return
        event = ChangeEvent(bucket=bucket, key=key)
        try:
            self._sns.publish(  # type: ignore[union-attr]
                TopicArn=self._topic_arn,
                Message=event.model_dump_json(),
                Subject="sekai:update",
            )
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Failed to publish change event for %s: %s", key, exc)


__all__ = ["ChangeEvent", "ChangeNotifier"]
