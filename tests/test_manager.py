import asyncio
import unittest

from fakes import FakeTransport

from relaydrop.errors import AllTransportsExhaustedError, BackendUnavailableError
from relaydrop.net.profiler import NetworkProfile, NetworkType
from relaydrop.transport.base import TransferMetadata
from relaydrop.transport.manager import TransportManager, TransportRegistry

METADATA = TransferMetadata(transfer_id="abc123", file_name="a.txt", file_size=4, digest="sha256:00")


def manager_for(*transports, attempt_timeout=1.0, overall_timeout=10.0):
    registry = TransportRegistry()
    for transport in transports:
        registry.register(transport)
    registry.freeze()
    return TransportManager(registry, attempt_timeout=attempt_timeout, overall_timeout=overall_timeout)


def names(order):
    return [transport.get_name() for transport in order]


class RegistryTests(unittest.TestCase):
    def test_duplicate_names_rejected(self):
        registry = TransportRegistry()
        registry.register(FakeTransport("a", 1))
        with self.assertRaises(ValueError):
            registry.register(FakeTransport("a", 2))

    def test_frozen_registry(self):
        registry = TransportRegistry()
        registry.freeze()
        with self.assertRaises(RuntimeError):
            registry.register(FakeTransport("a", 1))


class SelectOrderTests(unittest.IsolatedAsyncioTestCase):
    async def test_unavailable_transport_is_deferred(self):
        manager = manager_for(FakeTransport("A", 8, available=False), FakeTransport("B", 60))
        self.assertEqual(names(await manager.select_order()), ["B", "A"])

    async def test_priority_then_registration_order(self):
        manager = manager_for(
            FakeTransport("slow", 50),
            FakeTransport("first", 10),
            FakeTransport("tie", 50),
        )
        self.assertEqual(names(await manager.select_order()), ["first", "slow", "tie"])

    async def test_probe_error_and_timeout_defer(self):
        class HangingTransport(FakeTransport):
            async def is_available(self):
                await asyncio.sleep(10)
                return True

        manager = manager_for(
            FakeTransport("broken", 1, probe_error=RuntimeError("boom")),
            HangingTransport("hangs", 2),
            FakeTransport("ok", 3),
        )
        manager.probe_timeout = 0.1
        self.assertEqual(names(await manager.select_order()), ["ok", "broken", "hangs"])

    async def test_unreachable_native_ports_defer(self):
        profile = NetworkProfile(
            is_restrictive=True,
            reachable_ports=frozenset({443}),
            network_type=NetworkType.RESTRICTIVE,
        )
        manager = manager_for(FakeTransport("p2p", 1, native_ports=(9009,)), FakeTransport("relay", 5, native_ports=(443,)))
        self.assertEqual(names(await manager.select_order(profile)), ["relay", "p2p"])

    async def test_payload_limit_defers(self):
        manager = manager_for(FakeTransport("small", 1, max_payload_bytes=10), FakeTransport("big", 2))
        self.assertEqual(names(await manager.select_order(None, 100)), ["big", "small"])
        self.assertEqual(names(await manager.select_order(None, 5)), ["small", "big"])


class FailoverTests(unittest.IsolatedAsyncioTestCase):
    async def test_first_success_wins(self):
        first = FakeTransport("first", 1, fail="connection refused")
        second = FakeTransport("second", 2)
        third = FakeTransport("third", 3)
        manager = manager_for(first, second, third)
        seen = []
        record = await manager.send_with_failover(b"data", METADATA, after_attempt=seen.append)
        self.assertEqual(record.transport, "second")
        self.assertTrue(record.succeeded)
        self.assertEqual([r.outcome for r in seen], ["failed", "success"])
        self.assertEqual(seen[0].category, "firewall_port_block")
        self.assertEqual(third.calls, [])

    async def test_exhaustion_keeps_one_record_per_transport(self):
        manager = manager_for(FakeTransport("x", 1, fail="connection reset"), FakeTransport("y", 2, fail="no such host"))
        with self.assertRaises(AllTransportsExhaustedError) as caught:
            await manager.send_with_failover(b"data", METADATA)
        attempts = caught.exception.attempts
        self.assertEqual([a.transport for a in attempts], ["x", "y"])
        self.assertEqual([a.outcome for a in attempts], ["failed", "failed"])
        self.assertIn("no such host", caught.exception.last_error)

    async def test_attempt_timeout_moves_on(self):
        manager = manager_for(FakeTransport("stuck", 1, delay=5), FakeTransport("fast", 2), attempt_timeout=0.1)
        record = await manager.send_with_failover(b"data", METADATA)
        self.assertEqual(record.transport, "fast")

    async def test_unavailable_backend_error(self):
        class Unready(FakeTransport):
            async def send(self, payload, metadata, progress=None):
                raise BackendUnavailableError("not configured")

        manager = manager_for(Unready("unready", 1))
        with self.assertRaises(AllTransportsExhaustedError) as caught:
            await manager.send_with_failover(b"data", METADATA)
        self.assertEqual(caught.exception.attempts[0].outcome, "unavailable")

    async def test_receive_mirror(self):
        store = {METADATA.transfer_id: b"blob"}
        manager = manager_for(FakeTransport("bad", 1, fail="forbidden"), FakeTransport("good", 2, store=store))
        data, record = await manager.receive_with_failover(METADATA)
        self.assertEqual(data, b"blob")
        self.assertEqual(record.transport, "good")

    async def test_cancellation_stops_failover(self):
        slow = FakeTransport("slow", 1, delay=5)
        later = FakeTransport("later", 2)
        manager = manager_for(slow, later, attempt_timeout=10)
        task = asyncio.create_task(manager.send_with_failover(b"data", METADATA))
        await slow.started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(later.calls, [])

    async def test_transport_status_counts_attempts(self):
        flaky = FakeTransport("flaky", 1, fail="connection refused")
        steady = FakeTransport("steady", 2)
        idle = FakeTransport("idle", 3)
        manager = manager_for(flaky, steady, idle)
        await manager.send_with_failover(b"data", METADATA)
        await manager.send_with_failover(b"data", METADATA)
        status = manager.transport_status()
        self.assertEqual(list(status), ["flaky", "steady", "idle"])
        self.assertEqual(status["flaky"]["attempts"], 2)
        self.assertEqual(status["flaky"]["successes"], 0)
        self.assertEqual(status["flaky"]["errors"], {"firewall_port_block": 2})
        self.assertEqual(status["flaky"]["recent_success_rate"], 0.0)
        self.assertIsNone(status["flaky"]["average_latency"])
        self.assertEqual(status["steady"]["successes"], 2)
        self.assertEqual(status["steady"]["recent_success_rate"], 1.0)
        self.assertIsNotNone(status["steady"]["average_latency"])
        self.assertEqual(status["idle"]["attempts"], 0)
        self.assertIsNone(status["idle"]["recent_success_rate"])

    async def test_timeouts_are_counted(self):
        manager = manager_for(FakeTransport("stuck", 1, delay=5), FakeTransport("fast", 2), attempt_timeout=0.1)
        await manager.send_with_failover(b"data", METADATA)
        stuck = manager.stats_for("stuck")
        self.assertEqual((stuck.attempts, stuck.timeouts), (1, 1))
        self.assertEqual(stuck.last_outcome, "timeout")

    async def test_skipped_after_deadline_not_counted(self):
        manager = manager_for(FakeTransport("a", 1), FakeTransport("b", 2), overall_timeout=0)
        with self.assertRaises(AllTransportsExhaustedError) as caught:
            await manager.send_with_failover(b"data", METADATA)
        self.assertEqual([a.outcome for a in caught.exception.attempts], ["timeout", "timeout"])
        self.assertEqual(manager.stats_for("a").attempts, 0)
        self.assertEqual(manager.stats_for("b").attempts, 0)

    async def test_progress_goes_to_the_calling_attempt(self):
        shared = FakeTransport("shared", 1, delay=0.1)
        manager = manager_for(shared)
        seen = {"a": [], "b": []}
        first = METADATA
        second = TransferMetadata(transfer_id="def456", file_name="b.txt", file_size=8, digest="sha256:01")
        await asyncio.gather(
            manager.send_with_failover(b"aaaa", first, progress=lambda d, t: seen["a"].append((d, t))),
            manager.send_with_failover(b"bbbbbbbb", second, progress=lambda d, t: seen["b"].append((d, t))),
        )
        self.assertEqual(seen, {"a": [(4, 4)], "b": [(8, 8)]})

    async def test_close_all(self):
        a, b = FakeTransport("a", 1), FakeTransport("b", 2)
        await manager_for(a, b).close_all()
        self.assertTrue(a.closed and b.closed)


if __name__ == "__main__":
    unittest.main()
