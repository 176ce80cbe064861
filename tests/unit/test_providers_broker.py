"""
Unit tests for broker adapters and service wiring.
"""
import json
import os
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kafka.errors import KafkaError, KafkaTimeoutError

from coffeeleaf.config import DevelopmentConfig, ProductionConfig, TestingConfig, get_config
from coffeeleaf.errors import QueueUnavailable
from coffeeleaf.services.broker import InMemoryBroker, KafkaBroker, NullBroker, consume
from coffeeleaf.services.cache import NullTier, RedisTier
from coffeeleaf.services.providers import build_broker, build_cache, model_search_paths


class TestBuildBroker:
    """Tests for QUEUE_URL parsing"""

    def test_empty_url_gives_null_broker(self):
        assert isinstance(build_broker({'QUEUE_URL': ''}), NullBroker)
        assert isinstance(build_broker({}), NullBroker)

    def test_memory_scheme(self):
        assert isinstance(build_broker({'QUEUE_URL': 'memory://'}), InMemoryBroker)

    def test_kafka_scheme_lists_servers(self):
        broker = build_broker({'QUEUE_URL': 'kafka://k1:9092, k2:9092', 'QUEUE_GROUP_ID': 'g'})
        assert isinstance(broker, KafkaBroker)
        assert broker.bootstrap_servers == ['k1:9092', 'k2:9092']
        assert broker.group_id == 'g'

    @pytest.mark.parametrize('url', ['amqp://rabbit:5672', 'kafka://'])
    def test_unusable_urls_raise(self, url):
        with pytest.raises(ValueError):
            build_broker({'QUEUE_URL': url})


class TestConfigWiring:

    def test_explicit_search_paths(self):
        paths = model_search_paths({'MODEL_SEARCH_PATHS': os.pathsep.join(['/a', '', '/b'])})
        assert paths == ['/a', '/b']

    def test_default_search_paths_start_with_model_path(self):
        paths = model_search_paths({'MODEL_PATH': '/srv/models'})
        assert paths[0] == '/srv/models'
        assert os.path.join(os.getcwd(), 'models') in paths

    def test_get_config_by_name_and_environment(self, monkeypatch):
        monkeypatch.setenv('FLASK_ENV', 'testing')
        assert get_config() is TestingConfig
        assert get_config('production') is ProductionConfig
        assert get_config('staging') is DevelopmentConfig

    def test_cache_without_redis_is_memory_only(self):
        cache = build_cache({'CACHE_MEMORY_MAX_ENTRIES': 5})
        assert isinstance(cache.shared, NullTier)
        assert cache.memory.max_size == 5

    def test_cache_with_redis_url(self):
        cache = build_cache({'REDIS_URL': 'redis://localhost:6379/0'})
        assert isinstance(cache.shared, RedisTier)


class TestInMemoryBroker:

    def test_publish_poll_and_ack(self):
        broker = InMemoryBroker(poll_timeout=0)
        broker.publish('jobs', {'request_id': 'r1'})

        deliveries = broker.poll('jobs')
        assert deliveries[0].payload == {'request_id': 'r1'}
        deliveries[0].ack()
        assert broker.acked == ['jobs:1']
        assert broker.poll('jobs') == []

    def test_consume_stops_after_event(self):
        broker = InMemoryBroker(poll_timeout=0)
        for i in range(3):
            broker.publish('jobs', {'n': i})

        stop = MagicMock()
        stop.is_set.side_effect = [False, True]
        seen = [d.payload['n'] for d in consume(broker, 'jobs', stop)]
        assert seen == [0]
        assert broker.pending('jobs') == 2

    def test_null_broker_refuses_publish(self):
        with pytest.raises(QueueUnavailable):
            NullBroker().publish('jobs', {})


class TestKafkaBroker:
    """Tests for KafkaBroker with kafka-python patched out"""

    @patch('coffeeleaf.services.broker.KafkaProducer')
    def test_publish_waits_for_ack(self, producer_cls):
        future = MagicMock()
        future.get.return_value = SimpleNamespace(partition=0, offset=12)
        producer_cls.return_value.send.return_value = future

        broker = KafkaBroker(['k1:9092'], publish_timeout=1.5)
        broker.publish('jobs', {'request_id': 'abc'})

        producer_cls.return_value.send.assert_called_once_with(
            'jobs', value={'request_id': 'abc'}, key='abc'
        )
        future.get.assert_called_once_with(timeout=1.5)

    @patch('coffeeleaf.services.broker.KafkaProducer')
    def test_publish_timeout_becomes_queue_unavailable(self, producer_cls):
        future = MagicMock()
        future.get.side_effect = KafkaTimeoutError('no ack')
        producer_cls.return_value.send.return_value = future

        with pytest.raises(QueueUnavailable):
            KafkaBroker(['k1:9092']).publish('jobs', {'request_id': 'abc'})

    @patch('coffeeleaf.services.broker.KafkaConsumer')
    def test_poll_decodes_and_commits_manually(self, consumer_cls):
        consumer = consumer_cls.return_value
        good = SimpleNamespace(topic='jobs', partition=0, offset=1,
                               value=json.dumps({'request_id': 'abc'}).encode('utf-8'))
        bad = SimpleNamespace(topic='jobs', partition=0, offset=2, value=b'\xff not json')
        consumer.poll.return_value = {'tp': [good, bad]}

        broker = KafkaBroker(['k1:9092'])
        deliveries = broker.poll('jobs')

        assert consumer_cls.call_args.kwargs['enable_auto_commit'] is False
        assert deliveries[0].payload == {'request_id': 'abc'}
        assert deliveries[1].payload is None
        deliveries[0].ack()
        consumer.commit.assert_called_once_with()

    @patch('coffeeleaf.services.broker.KafkaConsumer')
    def test_commit_failure_becomes_queue_unavailable(self, consumer_cls):
        consumer = consumer_cls.return_value
        message = SimpleNamespace(topic='jobs', partition=0, offset=3,
                                  value=json.dumps({'request_id': 'abc'}).encode('utf-8'))
        consumer.poll.return_value = {'tp': [message]}
        consumer.commit.side_effect = KafkaError('group is rebalancing')

        delivery = KafkaBroker(['k1:9092']).poll('jobs')[0]
        with pytest.raises(QueueUnavailable):
            delivery.ack()
        with pytest.raises(QueueUnavailable):
            delivery.reject()
