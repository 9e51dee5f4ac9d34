from ddt import ddt, data, unpack
import threading
from unittest import TestCase

from performed.model import request
from performed.throttle import ThrottleRegistry, TokenBucket, realm_of

from fakes import FakeClock


@ddt
class TestTokenBucket(TestCase):
    def test_refill_is_capped_at_capacity(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2.0, capacity=4.0, time_func=clock.time)

        bucket.reserve()
        bucket.reserve()
        bucket.reserve()
        self.assertEqual(1.0, bucket.tokens_available)

        clock.advance(0.5)
        self.assertAlmostEqual(2.0, bucket.tokens_available)

        clock.advance(100)
        self.assertEqual(4.0, bucket.tokens_available)

    def test_callers_queue_up_when_empty(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=10.0, capacity=1.0, time_func=clock.time)

        waits = [bucket.reserve() for _ in range(3)]

        self.assertEqual(0.0, waits[0])
        self.assertAlmostEqual(0.1, waits[1])
        self.assertAlmostEqual(0.2, waits[2])

    @data((0, 1), (-1, 1), (1, 0.5))
    @unpack
    def test_invalid_configuration(self, rate, capacity):
        with self.assertRaises(ValueError):
            TokenBucket(rate=rate, capacity=capacity)


@ddt
class TestThrottleRegistry(TestCase):
    def setUp(self):
        self.__clock = FakeClock()
        self.__sut = ThrottleRegistry(self.__clock.time, self.__clock.sleep)

    @data((1, 10.0), (3, 10.0), (5, 2.0))
    @unpack
    def test_first_acquisitions_up_to_capacity_are_free(self, capacity, rate):
        waits = [self.__sut.acquire('realm', rate, capacity) for _ in range(capacity + 1)]

        self.assertEqual([0.0] * capacity, waits[:capacity])
        self.assertAlmostEqual(1 / rate, waits[capacity])
        self.assertEqual([waits[capacity]], self.__clock.sleeps, 'Only the last acquisition should sleep')

    def test_sleeping_refills_the_bucket(self):
        waits = [self.__sut.acquire('realm', 10.0) for _ in range(3)]

        self.assertEqual(0.0, waits[0])
        self.assertAlmostEqual(0.1, waits[1])
        self.assertAlmostEqual(0.1, waits[2])

    def test_realms_are_independent(self):
        self.__sut.acquire('a', 1.0)

        self.assertEqual(0.0, self.__sut.acquire('b', 1.0))
        self.assertAlmostEqual(1.0, self.__sut.acquire('a', 1.0))

    def test_reset_forgets_buckets(self):
        self.__sut.acquire('realm', 1.0)
        self.__sut.reset()

        self.assertEqual({}, self.__sut.status())
        self.assertEqual(0.0, self.__sut.acquire('realm', 1.0))

    def test_status(self):
        self.__sut.acquire('realm', 2.0, 3.0)

        status = self.__sut.status()['realm']

        self.assertEqual(2.0, status.rate)
        self.assertEqual(3.0, status.capacity)
        self.assertEqual(2.0, status.tokens)

    def test_concurrent_callers_are_not_over_admitted(self):
        registry = ThrottleRegistry(FakeClock().time, lambda seconds: None)
        waits = []
        lock = threading.Lock()

        def acquire():
            wait = registry.acquire('realm', 10.0, 2.0)
            with lock:
                waits.append(wait)

        threads = [threading.Thread(target=acquire) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # The clock never moves: two free tokens, then one every 0.1s.
        self.assertEqual([0.0, 0.0, 0.1, 0.2, 0.3, 0.4], [round(wait, 6) for wait in sorted(waits)])

    @data(
        ('http://example.com/a', None, 'http://example.com'),
        ('https://example.com:8443/a', None, 'https://example.com:8443'),
        ('http://example.com/a', 'github', 'github'),
    )
    @unpack
    def test_realm(self, url, realm, expected):
        self.assertEqual(expected, realm_of(request(url).with_throttle(1, realm=realm)))
