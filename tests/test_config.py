import tempfile
import unittest
from pathlib import Path

from relaydrop.config import load_config, parse_config

SAMPLE = Path(__file__).resolve().parents[1] / "config.sample.yaml"


class ConfigTests(unittest.TestCase):
    def test_sample_config_loads(self):
        cfg = load_config(SAMPLE)
        self.assertEqual(cfg.security.mode, "auto")
        self.assertEqual(cfg.security.kdf_iterations, 100_000)
        self.assertEqual(cfg.transports[0].kind, "folder")
        # 相对路径以配置文件目录为基准
        self.assertEqual(Path(cfg.transports[0].options["path"]), SAMPLE.parent / "data" / "dropbox")
        self.assertEqual(cfg.transfer.receive_dir, SAMPLE.parent / "data" / "received")

    def test_defaults(self):
        cfg = parse_config({})
        self.assertEqual(cfg.profiler.web_ports, [80, 443])
        self.assertEqual(cfg.transports, [])
        self.assertIsNone(cfg.logging.file)

    def test_duplicate_transport_names(self):
        raw = {"transports": [{"name": "a", "kind": "folder"}, {"name": "a", "kind": "folder"}]}
        with self.assertRaises(ValueError):
            parse_config(raw)

    def test_cbc_requires_opt_in(self):
        with self.assertRaises(ValueError):
            parse_config({"security": {"mode": "cbc"}})
        cfg = parse_config({"security": {"mode": "cbc", "allow_unauthenticated": True}})
        self.assertEqual(cfg.security.mode, "cbc")

    def test_invalid_values(self):
        for raw in (
            {"security": {"mode": "rot13"}},
            {"security": {"kdf_iterations": 10}},
            {"profiler": {"web_ports": [0]}},
            {"transfer": {"attempt_timeout_sec": 60, "overall_timeout_sec": 30}},
            {"logging": {"level": "loud"}},
        ):
            with self.subTest(raw=raw), self.assertRaises(ValueError):
                parse_config(raw)

    def test_empty_file_uses_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.yaml"
            path.write_text("", encoding="utf-8")
            cfg = load_config(path)
            self.assertEqual(cfg.source, path.resolve())

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_config("/nonexistent/relaydrop.yaml")


if __name__ == "__main__":
    unittest.main()
