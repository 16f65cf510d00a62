import unittest

from tanuki.core.config import settings
from tanuki.services.rate_limit import RateLimitState, required_delay_ms


class FakeClock:
    def __init__(self, start_ms=1_700_000_000_000.0):
        self.now = start_ms
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds * 1000


class TestRequiredDelay(unittest.TestCase):
    def test_critical_quota_waits_thirty_seconds(self):
        self.assertGreaterEqual(required_delay_ms(2), 30000)
        self.assertEqual(required_delay_ms(3), 30000)

    def test_healthy_quota_uses_baseline(self):
        self.assertEqual(required_delay_ms(50), settings.anilist_min_request_interval_ms)
        self.assertEqual(required_delay_ms(50, min_interval_ms=700), 700)

    def test_tiers_are_monotonic(self):
        delays = [required_delay_ms(r) for r in range(0, 40)]
        self.assertEqual(delays, sorted(delays, reverse=True))
        self.assertEqual(required_delay_ms(8), 20000)
        self.assertEqual(required_delay_ms(15), 12000)
        self.assertEqual(required_delay_ms(25), 8000)


class TestRateLimitState(unittest.IsolatedAsyncioTestCase):
    def test_headers_update_state(self):
        state = RateLimitState(clock=FakeClock())
        state.update_from_headers({
            "x-ratelimit-remaining": "12",
            "x-ratelimit-reset": "1700000100",
            "x-ratelimit-limit": "90",
        })
        self.assertEqual(state.remaining, 12)
        self.assertEqual(state.reset_at_ms, 1700000100 * 1000)
        self.assertEqual(state.limit, 90)

    def test_missing_or_malformed_headers_are_ignored(self):
        state = RateLimitState(initial_remaining=40, clock=FakeClock())
        state.update_from_headers({})
        state.update_from_headers({"x-ratelimit-remaining": "lots", "x-ratelimit-reset": ""})
        self.assertEqual(state.remaining, 40)
        self.assertEqual(state.reset_at_ms, 0)

    def test_quota_exceeded_without_reset_assumes_cooldown(self):
        clock = FakeClock()
        state = RateLimitState(clock=clock)
        wait_ms = state.note_quota_exceeded()
        self.assertGreaterEqual(wait_ms, 65000)
        self.assertAlmostEqual(state.reset_at_ms - clock.now, 60000)
        self.assertEqual(state.remaining, 0)

    def test_quota_exceeded_with_known_reset_waits_until_reset(self):
        clock = FakeClock()
        state = RateLimitState(clock=clock)
        state.reset_at_ms = clock.now + 20000
        self.assertEqual(state.note_quota_exceeded(), 25000)

        state.reset_at_ms = clock.now + 1
        self.assertGreaterEqual(state.note_quota_exceeded(), 5000)

    async def test_throttle_spaces_consecutive_requests(self):
        clock = FakeClock()
        state = RateLimitState(initial_remaining=2, clock=clock)
        await state.throttle(clock.sleep)
        self.assertEqual(clock.sleeps, [])
        await state.throttle(clock.sleep)
        self.assertEqual(clock.sleeps, [30.0])

    async def test_throttle_skips_wait_when_gap_already_elapsed(self):
        clock = FakeClock()
        state = RateLimitState(initial_remaining=50, clock=clock)
        await state.throttle(clock.sleep)
        clock.now += 6000
        await state.throttle(clock.sleep)
        self.assertEqual(clock.sleeps, [])


if __name__ == "__main__":
    unittest.main()
