"""Unit tests for ServiceUrlCache."""

from __future__ import annotations

import threading
import unittest

from digest_failover.url_cache import ServiceUrlCache


class ServiceUrlCacheTests(unittest.TestCase):
    def test_get_returns_put_value_until_overwritten_or_removed(self):
        cache = ServiceUrlCache()
        path = "/digest-service/ds/digest"

        self.assertIsNone(cache.get(path))
        cache.put(path, "http://10.0.0.1:8080/digest-service/ds/digest")
        self.assertEqual(cache.get(path), "http://10.0.0.1:8080/digest-service/ds/digest")

        cache.put(path, "http://10.0.0.2:8080/digest-service/ds/digest")
        self.assertEqual(cache.get(path), "http://10.0.0.2:8080/digest-service/ds/digest")

        cache.remove(path)
        self.assertIsNone(cache.get(path))
        self.assertNotIn(path, cache)

    def test_remove_with_expected_value_keeps_newer_entry(self):
        cache = ServiceUrlCache()
        cache.put("/svc", "http://new")

        self.assertIsNone(cache.remove("/svc", expected="http://old"))
        self.assertEqual(cache.get("/svc"), "http://new")

        self.assertEqual(cache.remove("/svc", expected="http://new"), "http://new")
        self.assertEqual(len(cache), 0)

    def test_remove_missing_key_is_noop(self):
        cache = ServiceUrlCache()
        self.assertIsNone(cache.remove("/missing"))

    def test_concurrent_writers(self):
        cache = ServiceUrlCache()

        def _writer(worker: int) -> None:
            for i in range(200):
                cache.put(f"/svc/{worker}/{i}", f"http://host-{worker}/{i}")
                if i % 2:
                    cache.remove(f"/svc/{worker}/{i}")

        threads = [threading.Thread(target=_writer, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(cache), 8 * 100)
        self.assertEqual(cache.get("/svc/3/10"), "http://host-3/10")


if __name__ == "__main__":
    unittest.main()
