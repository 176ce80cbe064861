# =============================================================================
# CoffeeLeaf Backend
# services/broker.py - Queue Broker Adapters
#
# Durable queue used by the asynchronous prediction mode. Kafka in
# production, an in-process broker for development and tests, and a null
# broker when no queue is configured.
# =============================================================================

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from kafka import KafkaConsumer, KafkaProducer
from kafka.errors import KafkaError

from .health import HealthStatus
from ..errors import QueueUnavailable

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """
    One message handed to a consumer.

    ``ack`` confirms processing; ``reject`` drops the message without
    requeueing it. Either may raise QueueUnavailable when the broker
    cannot record the outcome.
    """
    payload: Optional[Dict]
    ack: Callable[[], None]
    reject: Callable[[], None]
    delivery_id: str = ''


def consume(broker, topic: str, stop_event: threading.Event) -> Iterator[Delivery]:
    """
    Stream deliveries from ``broker`` until ``stop_event`` is set.

    The event is checked before every poll, so a consumer that stops after
    its current message never receives another one.
    """
    while not stop_event.is_set():
        for delivery in broker.poll(topic):
            yield delivery
            if stop_event.is_set():
                return


# =============================================================================
# Kafka
# =============================================================================

class KafkaBroker:
    """
    Kafka-backed broker.

    Offsets are committed manually, one message at a time, so an ack only
    happens after the worker has persisted its result. Both ack and reject
    commit the offset; a rejected job is never redelivered.
    """

    def __init__(
        self,
        bootstrap_servers: List[str],
        group_id: str = 'coffeeleaf-workers',
        publish_timeout: float = 5.0,
        poll_timeout_ms: int = 1000,
        client_id: str = 'coffeeleaf'
    ):
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.publish_timeout = publish_timeout
        self.poll_timeout_ms = poll_timeout_ms
        self.client_id = client_id
        self._producer: Optional[KafkaProducer] = None
        self._consumers: Dict[str, KafkaConsumer] = {}
        self._lock = threading.Lock()

    def _get_producer(self) -> KafkaProducer:
        with self._lock:
            if self._producer is None:
                self._producer = KafkaProducer(
                    bootstrap_servers=self.bootstrap_servers,
                    client_id=self.client_id,
                    value_serializer=lambda v: json.dumps(v).encode('utf-8'),
                    key_serializer=lambda k: k.encode('utf-8') if k else None,
                    acks='all',
                    retries=3,
                    max_block_ms=int(self.publish_timeout * 1000)
                )
                logger.info(f"Created Kafka producer: bootstrap_servers={self.bootstrap_servers}")
            return self._producer

    def _get_consumer(self, topic: str) -> KafkaConsumer:
        with self._lock:
            consumer = self._consumers.get(topic)
            if consumer is None:
                consumer = KafkaConsumer(
                    topic,
                    bootstrap_servers=self.bootstrap_servers,
                    group_id=self.group_id,
                    client_id=self.client_id,
                    auto_offset_reset='earliest',
                    enable_auto_commit=False,
                    max_poll_records=1
                )
                self._consumers[topic] = consumer
                logger.info(
                    f"Created Kafka consumer: topic={topic}, "
                    f"bootstrap_servers={self.bootstrap_servers}, group_id={self.group_id}"
                )
            return consumer

    def publish(self, topic: str, payload: Dict) -> None:
        """
        Publish and wait for the broker acknowledgement.

        Raises:
            QueueUnavailable: On any Kafka error or timeout
        """
        try:
            future = self._get_producer().send(topic, value=payload, key=payload.get('request_id'))
            metadata = future.get(timeout=self.publish_timeout)
        except (KafkaError, OSError) as e:
            raise QueueUnavailable(f"Kafka publish to {topic} failed: {e}") from e

        logger.debug(f"Published to {topic}[{metadata.partition}]:{metadata.offset}")

    @staticmethod
    def _committer(consumer: KafkaConsumer) -> Callable[[], None]:
        """
        Offset commit for a delivery.

        Raises:
            QueueUnavailable: If the commit fails (e.g. during a rebalance)
        """
        def commit():
            try:
                consumer.commit()
            except (KafkaError, OSError) as e:
                raise QueueUnavailable(f"Kafka offset commit failed: {e}") from e
        return commit

    def poll(self, topic: str) -> List[Delivery]:
        try:
            consumer = self._get_consumer(topic)
            records = consumer.poll(timeout_ms=self.poll_timeout_ms, max_records=1)
        except (KafkaError, OSError) as e:
            logger.warning(f"Kafka poll on {topic} failed: {e}")
            return []

        deliveries = []
        for partition, messages in records.items():
            for message in messages:
                try:
                    payload = json.loads(message.value.decode('utf-8'))
                except (ValueError, AttributeError) as e:
                    logger.error(
                        f"Failed to decode JSON from message "
                        f"{message.topic}[{message.partition}]:{message.offset}: {e}"
                    )
                    payload = None
                deliveries.append(Delivery(
                    payload=payload,
                    ack=self._committer(consumer),
                    reject=self._committer(consumer),
                    delivery_id=f"{message.topic}[{message.partition}]:{message.offset}"
                ))
        return deliveries

    def health_check(self) -> HealthStatus:
        try:
            connected = self._get_producer().bootstrap_connected()
        except (KafkaError, OSError) as e:
            return HealthStatus.failed('queue:kafka', str(e))
        if not connected:
            return HealthStatus.failed('queue:kafka', 'bootstrap servers unreachable')
        return HealthStatus.ok('queue:kafka', ','.join(self.bootstrap_servers))

    def close(self) -> None:
        with self._lock:
            for consumer in self._consumers.values():
                consumer.close()
            self._consumers.clear()
            if self._producer is not None:
                self._producer.flush(timeout=self.publish_timeout)
                self._producer.close(timeout=self.publish_timeout)
                self._producer = None
        logger.info("Kafka broker closed")


# =============================================================================
# In-Process Broker
# =============================================================================

class InMemoryBroker:
    """
    Single-process broker for development and tests.

    Keeps track of acknowledged and rejected delivery ids so callers can
    inspect what happened to each message.
    """

    def __init__(self, poll_timeout: float = 0.1):
        self.poll_timeout = poll_timeout
        self._queues: Dict[str, queue.Queue] = {}
        self._lock = threading.Lock()
        self._sequence = 0
        self.acked: List[str] = []
        self.rejected: List[str] = []

    def _queue(self, topic: str) -> queue.Queue:
        with self._lock:
            if topic not in self._queues:
                self._queues[topic] = queue.Queue()
            return self._queues[topic]

    def publish(self, topic: str, payload: Dict) -> None:
        with self._lock:
            self._sequence += 1
            delivery_id = f"{topic}:{self._sequence}"
        self._queue(topic).put((delivery_id, json.dumps(payload)))

    def poll(self, topic: str) -> List[Delivery]:
        try:
            delivery_id, raw = self._queue(topic).get(timeout=self.poll_timeout)
        except queue.Empty:
            return []

        return [Delivery(
            payload=json.loads(raw),
            ack=lambda: self.acked.append(delivery_id),
            reject=lambda: self.rejected.append(delivery_id),
            delivery_id=delivery_id
        )]

    def pending(self, topic: str) -> int:
        return self._queue(topic).qsize()

    def health_check(self) -> HealthStatus:
        return HealthStatus.ok('queue:memory', 'in-process')

    def close(self) -> None:
        return None


# =============================================================================
# Null Broker
# =============================================================================

class NullBroker:
    """Broker used when no queue is configured: every submission runs inline."""

    def __init__(self, poll_timeout: float = 1.0):
        self.poll_timeout = poll_timeout

    def publish(self, topic: str, payload: Dict) -> None:
        raise QueueUnavailable('No queue broker configured')

    def poll(self, topic: str) -> List[Delivery]:
        # Nothing will ever arrive; idle instead of spinning
        time.sleep(self.poll_timeout)
        return []

    def health_check(self) -> HealthStatus:
        return HealthStatus.ok('queue', 'not configured (synchronous mode)')

    def close(self) -> None:
        return None
