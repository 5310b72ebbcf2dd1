"""Unit tests for ChangeNotifier and the SNS transport."""
import json
import threading

import boto3
import pytest
from moto import mock_aws

from notifier.change_notifier import EVENTS_UPDATED_CHANNEL, ChangeNotifier, ChangeSignal
from notifier.sns_transport import SnsChangeListener


def test_publish_reaches_every_listener():
    notifier = ChangeNotifier()
    received_a, received_b = [], []
    notifier.subscribe(received_a.append)
    notifier.subscribe(received_b.append)

    delivered = notifier.publish(4)

    assert delivered == 2
    assert received_a == [ChangeSignal(change_count=4)]
    assert received_b == [ChangeSignal(change_count=4)]


def test_payload_is_only_a_count():
    signal = ChangeSignal(change_count=7)

    assert signal.channel == EVENTS_UPDATED_CHANNEL
    assert signal.to_payload() == {'changeCount': 7}


def test_buffered_subscription():
    notifier = ChangeNotifier()
    subscription = notifier.subscribe()

    notifier.publish(1)
    notifier.publish(2)

    assert subscription.next_signal(timeout=0.1).change_count == 1
    assert subscription.next_signal(timeout=0.1).change_count == 2
    assert subscription.next_signal(timeout=0.05) is None


def test_full_buffer_drops_oldest_signal():
    """Test an idle buffered subscriber keeps only the newest signals."""
    notifier = ChangeNotifier(max_buffered=2)
    subscription = notifier.subscribe()

    for count in range(1, 6):
        assert notifier.publish(count) == 1

    assert subscription.next_signal(timeout=0.1).change_count == 4
    assert subscription.next_signal(timeout=0.1).change_count == 5
    assert subscription.next_signal(timeout=0.05) is None


def test_late_subscriber_misses_earlier_publish():
    notifier = ChangeNotifier()
    notifier.publish(3)

    subscription = notifier.subscribe()

    assert subscription.next_signal(timeout=0.05) is None


def test_unsubscribed_listener_not_called():
    notifier = ChangeNotifier()
    received = []
    subscription = notifier.subscribe(received.append)

    notifier.unsubscribe(subscription)
    notifier.publish(1)

    assert received == []
    assert notifier.subscriber_count() == 0


def test_unsubscribe_twice_is_safe():
    notifier = ChangeNotifier()
    subscription = notifier.subscribe()

    notifier.unsubscribe(subscription)
    notifier.unsubscribe(subscription)

    assert notifier.subscriber_count() == 0


def test_failing_listener_does_not_break_fanout():
    """Test a listener that raises is skipped and others still get the signal."""
    notifier = ChangeNotifier()
    received = []

    def broken(signal):
        raise ConnectionError('client went away')

    notifier.subscribe(broken)
    notifier.subscribe(received.append)

    delivered = notifier.publish(5)

    assert delivered == 1
    assert received == [ChangeSignal(change_count=5)]


def test_unsubscribe_during_publish():
    """Test a listener unsubscribing another mid-publish does not error."""
    notifier = ChangeNotifier()
    received = []
    holder = {}

    def unsubscribe_other(signal):
        notifier.unsubscribe(holder['other'])

    notifier.subscribe(unsubscribe_other)
    holder['other'] = notifier.subscribe(received.append)

    notifier.publish(1)
    notifier.publish(2)

    # Snapshot semantics: the first publish still reaches the listener
    assert received == [ChangeSignal(change_count=1)]


def test_concurrent_subscribe_and_publish():
    notifier = ChangeNotifier()
    errors = []

    def churn():
        try:
            for _ in range(200):
                notifier.unsubscribe(notifier.subscribe(lambda signal: None))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=churn) for _ in range(4)]
    for thread in threads:
        thread.start()
    for _ in range(200):
        notifier.publish(1)
    for thread in threads:
        thread.join()

    assert errors == []
    assert notifier.subscriber_count() == 0


@pytest.fixture
def sns_queue(monkeypatch):
    """Create a mock SNS topic with an SQS queue subscribed to it."""
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    with mock_aws():
        sns = boto3.client('sns', region_name='us-east-1')
        sqs = boto3.client('sqs', region_name='us-east-1')
        topic_arn = sns.create_topic(Name='events-updated')['TopicArn']
        queue_url = sqs.create_queue(QueueName='events-updated-clients')['QueueUrl']
        queue_arn = sqs.get_queue_attributes(
            QueueUrl=queue_url, AttributeNames=['QueueArn']
        )['Attributes']['QueueArn']
        sns.subscribe(TopicArn=topic_arn, Protocol='sqs', Endpoint=queue_arn)
        yield topic_arn, sqs, queue_url


def test_sns_listener_publishes_payload(sns_queue):
    topic_arn, sqs, queue_url = sns_queue
    notifier = ChangeNotifier()
    notifier.subscribe(SnsChangeListener(topic_arn, region_name='us-east-1'))

    delivered = notifier.publish(3)

    assert delivered == 1
    messages = sqs.receive_message(QueueUrl=queue_url, MaxNumberOfMessages=1)['Messages']
    envelope = json.loads(messages[0]['Body'])
    assert json.loads(envelope['Message']) == {'changeCount': 3}


def test_sns_failure_is_isolated(sns_queue):
    topic_arn, _, _ = sns_queue
    notifier = ChangeNotifier()
    received = []
    notifier.subscribe(SnsChangeListener(topic_arn + '-missing', region_name='us-east-1'))
    notifier.subscribe(received.append)

    delivered = notifier.publish(2)

    assert delivered == 1
    assert received == [ChangeSignal(change_count=2)]
