import asyncio
import unittest

from relaydrop.config import ProfilerConfig
from relaydrop.errors import ProbeTimeoutError
from relaydrop.net.classifier import classify_error, guidance_for
from relaydrop.net.profiler import NetworkProfiler, NetworkType, ProxyKind, detect_proxy


def profiler_with(reachable, *, environ=None, interfaces=(), hang=()):
    cfg = ProfilerConfig(timeout_sec=0.5, probe_hosts=["probe.test"], web_ports=[80, 443], native_ports=[9009])

    async def connector(host, port, timeout):
        if port in hang:
            await asyncio.sleep(10)
        return port in reachable

    return NetworkProfiler(cfg, connector=connector, environ=environ or {}, interfaces=lambda: list(interfaces))


class NetworkProfilerTests(unittest.IsolatedAsyncioTestCase):
    async def test_open_network(self):
        profile = await profiler_with({80, 443, 9009}).classify()
        self.assertFalse(profile.is_restrictive)
        self.assertIs(profile.network_type, NetworkType.OPEN)
        self.assertEqual(profile.reachable_ports, frozenset({80, 443, 9009}))

    async def test_only_web_ports_is_restrictive(self):
        profile = await profiler_with({443}).classify()
        self.assertTrue(profile.is_restrictive)
        self.assertIs(profile.network_type, NetworkType.RESTRICTIVE)

    async def test_restrictive_with_proxy_is_corporate(self):
        profile = await profiler_with({80, 443}, environ={"HTTPS_PROXY": "http://proxy:3128"}).classify()
        self.assertIs(profile.proxy_kind, ProxyKind.HTTP)
        self.assertIs(profile.network_type, NetworkType.CORPORATE)

    async def test_mobile_interface(self):
        profile = await profiler_with({80, 443, 9009}, interfaces=["lo", "wwan0"]).classify()
        self.assertIs(profile.network_type, NetworkType.MOBILE)

    async def test_nothing_reachable(self):
        profile = await profiler_with(set()).classify()
        self.assertFalse(profile.is_restrictive)
        self.assertIs(profile.network_type, NetworkType.UNKNOWN)

    async def test_hanging_probe_is_bounded(self):
        loop = asyncio.get_running_loop()
        started = loop.time()
        profile = await profiler_with({80, 443}, hang={9009}).classify(timeout=0.2)
        self.assertLess(loop.time() - started, 2.0)
        self.assertTrue(profile.is_restrictive)

    async def test_probe_timeout_counts_unreachable(self):
        cfg = ProfilerConfig(timeout_sec=0.5, probe_hosts=["probe.test"], web_ports=[443], native_ports=[9009])

        async def connector(host, port, timeout):
            if port == 9009:
                raise ProbeTimeoutError("slow")
            return True

        profile = await NetworkProfiler(cfg, connector=connector, environ={}, interfaces=list).classify()
        self.assertEqual(profile.reachable_ports, frozenset({443}))


class HelperTests(unittest.TestCase):
    def test_detect_proxy(self):
        self.assertIs(detect_proxy({}), ProxyKind.NONE)
        self.assertIs(detect_proxy({"ALL_PROXY": "socks5://127.0.0.1:1080"}), ProxyKind.SOCKS)
        self.assertIs(detect_proxy({"http_proxy": "http://proxy"}), ProxyKind.HTTP)

    def test_network_type_aliases(self):
        self.assertIs(NetworkType.parse("institutional"), NetworkType.CORPORATE)
        self.assertIs(NetworkType.parse("University"), NetworkType.CORPORATE)
        self.assertIs(NetworkType.parse("open"), NetworkType.OPEN)

    def test_classify_error(self):
        self.assertEqual(classify_error(ConnectionRefusedError("Connection refused")).category, "firewall_port_block")
        self.assertEqual(classify_error("407 Proxy Authentication Required").category, "corporate_proxy")
        self.assertTrue(classify_error("operation timed out").retryable)
        self.assertEqual(classify_error("something odd").category, "unknown")

    def test_guidance_mentions_network(self):
        text = guidance_for("connection refused", NetworkType.CORPORATE)
        self.assertIn("hotspot", text)


if __name__ == "__main__":
    unittest.main()
