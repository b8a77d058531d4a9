from __future__ import annotations

import unittest

from utils.ttl_cache import TtlCache


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TtlCacheTests(unittest.TestCase):
    def test_hit_within_ttl_and_miss_after(self) -> None:
        clock = _Clock()
        cache: TtlCache[str] = TtlCache(300, clock=clock)
        cache.put("mint-a", "verdict")
        clock.now += 300
        self.assertEqual(cache.get("mint-a"), "verdict")
        clock.now += 0.001
        self.assertIsNone(cache.get("mint-a"))
        self.assertEqual(len(cache), 0, "expired entry must be evicted on read")

    def test_capacity_drops_oldest_insertion(self) -> None:
        clock = _Clock()
        cache: TtlCache[int] = TtlCache(60, max_entries=2, clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("c", 3)
        self.assertIsNone(cache.get("a"))
        self.assertEqual(cache.get("b"), 2)
        self.assertEqual(cache.get("c"), 3)

    def test_reput_refreshes_position_and_timestamp(self) -> None:
        clock = _Clock()
        cache: TtlCache[int] = TtlCache(10, max_entries=2, clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)
        clock.now += 8
        cache.put("a", 11)
        cache.put("c", 3)
        self.assertIsNone(cache.get("b"))
        clock.now += 5
        self.assertEqual(cache.get("a"), 11)

    def test_purge_expired_and_contains(self) -> None:
        clock = _Clock()
        cache: TtlCache[int] = TtlCache(5, clock=clock)
        cache.put("a", 1)
        clock.now += 3
        cache.put("b", 2)
        clock.now += 3
        self.assertEqual(cache.purge_expired(), 1)
        self.assertNotIn("a", cache)
        self.assertIn("b", cache)

    def test_blank_keys_are_ignored(self) -> None:
        cache: TtlCache[int] = TtlCache(5)
        cache.put("  ", 1)
        self.assertEqual(len(cache), 0)


if __name__ == "__main__":
    unittest.main()
