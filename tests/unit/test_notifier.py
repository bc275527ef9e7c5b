from __future__ import annotations

import json

from botocore.exceptions import ClientError

from common.notifier import ChangeEvent, ChangeNotifier


class _FakeSNS:
    def __init__(self, *, fail: bool = False) -> None:
        self.published = []
        self.fail = fail

    def publish(self, *, TopicArn: str, Message: str, Subject: str):
        if self.fail:
            raise ClientError({"Error": {"Code": "NotFound"}}, "Publish")
        self.published.append({"TopicArn": TopicArn, "Message": Message, "Subject": Subject})
        return {"MessageId": "1"}


def test_publish_sends_change_event_json():
    sns = _FakeSNS()
    notifier = ChangeNotifier("arn:aws:sns:us-east-1:1:sekai-update", sns=sns)

    notifier.publish("bucket", "sekai/musics.json")

    assert len(sns.published) == 1
    msg = sns.published[0]
    assert msg["TopicArn"] == "arn:aws:sns:us-east-1:1:sekai-update"
    assert json.loads(msg["Message"]) == {"bucket": "bucket", "key": "sekai/musics.json"}
    assert ChangeEvent.model_validate_json(msg["Message"]).key == "sekai/musics.json"


def test_publish_without_topic_is_noop():
    sns = _FakeSNS()
    notifier = ChangeNotifier(None, sns=sns)

    assert notifier.enabled is False
    notifier.publish("bucket", "key")
    assert sns.published == []


def test_publish_failure_is_swallowed():
    notifier = ChangeNotifier("arn:topic", sns=_FakeSNS(fail=True))

    notifier.publish("bucket", "key")  # must not raise
