"""
In-process topic pub/sub feeding the /events stream.

Admins subscribe to ADMIN_TOPIC and see every order; a customer subscribes
to their own user topic; everybody gets STOCK_TOPIC. Each event carries the
full current record keyed by `id`, so clients replace what they hold instead
of applying deltas. A missed or repeated event is harmless.
"""

import itertools
import json
import logging
import queue
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ADMIN_TOPIC = 'admin'
STOCK_TOPIC = 'stock'

ORDER_CREATED = 'order_created'
ORDER_UPDATED = 'order_updated'
STOCK_UPDATED = 'stock_updated'
EXCHANGE_REQUEST_SUBMITTED = 'exchange_request_submitted'


def user_topic(user_id):
    return f'user:{user_id}'


@dataclass(frozen=True)
class Event:
    seq: int
    name: str
    data: dict

    def to_sse(self):
        return f'id: {self.seq}\nevent: {self.name}\ndata: {json.dumps(self.data, default=str)}\n\n'


class Subscription:

    def __init__(self, broadcaster, topics, maxsize):
        self.broadcaster = broadcaster
        self.topics = frozenset(topics)
        self.queue = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, event):
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except queue.Full:
                # slow reader: the oldest snapshot goes, newer ones supersede it anyway
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout=None):
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self):
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events

    def close(self):
        self.broadcaster.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class Broadcaster:

    def __init__(self, queue_size=500):
        self.queue_size = queue_size
        self._subs = set()
        self._lock = threading.Lock()
        self._seq = itertools.count(1)

    def subscribe(self, topics):
        sub = Subscription(self, topics, self.queue_size)
        with self._lock:
            self._subs.add(sub)
        return sub

    def unsubscribe(self, sub):
        with self._lock:
            self._subs.discard(sub)
        if sub.dropped:
            logger.warning('subscriber %s dropped %d events', sorted(sub.topics), sub.dropped)

    def publish(self, name, data, topics):
        topics = set(topics)
        with self._lock:
            event = Event(next(self._seq), name, data)
            targets = [s for s in self._subs if s.topics & topics]
        for sub in targets:
            sub.deliver(event)
        logger.debug('published %s #%d to %d subscribers', name, event.seq, len(targets))
        return event

    def order_event(self, name, order):
        return self.publish(name, order, [ADMIN_TOPIC, user_topic(order['userId'])])

    def stock_event(self, product):
        return self.publish(STOCK_UPDATED, product, [STOCK_TOPIC, ADMIN_TOPIC])
