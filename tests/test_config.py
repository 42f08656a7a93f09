import json
import os
import tempfile
import unittest
from pathlib import Path

from gateway.config import MCPServerConfig, load_config
from gateway.exceptions import ConfigError


class TestConfig(unittest.TestCase):
    def test_load_config_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.json"
            data_dir = Path(tmpdir) / "data"
            config_path.write_text(json.dumps({"data_dir": str(data_dir)}))

            config = load_config(str(config_path))

            self.assertEqual(config.chat.max_turns, 5)
            self.assertEqual(config.chat.connect_timeout, 10.0)
            self.assertEqual(config.chat.read_timeout, 120.0)
            self.assertEqual(config.chat.temperature, 0.7)
            self.assertEqual(config.chat.max_tokens, 0)
            self.assertEqual(config.mcp.default_timeout_ms, 5000)
            self.assertEqual(config.mcp.catalog_timeout, 5.0)
            self.assertEqual(config.mcp.call_timeout, 30.0)
            self.assertTrue(config.mcp.check_on_start)
            self.assertEqual(config.permissions.timeout, 120.0)
            self.assertFalse(config.sandbox.enabled)
            self.assertEqual(config.sandbox.paths, [])
            self.assertFalse(config.telemetry.enabled)
            self.assertEqual(config.telemetry.log_dir, str(data_dir / "metrics"))
            self.assertFalse(config.telemetry.otel_enabled)
            self.assertIsNone(config.telemetry.otel_endpoint)
            self.assertEqual(config.telemetry.otel_service_name, "agent-gateway")
            self.assertEqual(config.log_dir, str(data_dir / "logs"))
            self.assertEqual(config.log_level, "INFO")

    def test_missing_file_yields_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = load_config(str(Path(tmpdir) / "absent.json"))
            self.assertEqual(config.chat.max_turns, 5)
            self.assertEqual(config.mcp.config_path, os.environ.get("GATEWAY_MCP_CONFIG", "mcp.json"))

    def test_invalid_values_raise(self):
        bad_sections = [
            {"chat": {"max_turns": 0}},
            {"chat": {"read_timeout": "soon"}},
            {"mcp": {"check_on_start": "yes"}},
            {"mcp": {"config_path": ""}},
            {"sandbox": {"paths": ["/ok", ""]}},
            {"telemetry": {"otel_enabled": 1}},
            {"log_level": "LOUD"},
            {"chat": []},
        ]
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.json"
            for section in bad_sections:
                config_path.write_text(json.dumps(section))
                with self.assertRaises(ConfigError, msg=str(section)):
                    load_config(str(config_path))

            config_path.write_text("{not json")
            with self.assertRaises(ConfigError):
                load_config(str(config_path))

    def test_env_overrides_mcp_config_path(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.json"
            config_path.write_text(json.dumps({"mcp": {"config_path": "from-file.json"}}))

            original = os.environ.get("GATEWAY_MCP_CONFIG")
            os.environ["GATEWAY_MCP_CONFIG"] = "/etc/gateway/mcp.json"
            try:
                config = load_config(str(config_path))
                self.assertEqual(config.mcp.config_path, "/etc/gateway/mcp.json")
            finally:
                if original is None:
                    os.environ.pop("GATEWAY_MCP_CONFIG", None)
                else:
                    os.environ["GATEWAY_MCP_CONFIG"] = original


class TestMCPServerConfig(unittest.TestCase):
    def test_round_trip_and_timeout_default(self):
        raw = {
            "type": "remote",
            "url": "https://mcp.example.com/mcp",
            "api_key": "k",
            "headers": {"X-Team": "core"},
            "enabled": True,
        }
        config = MCPServerConfig.from_dict(raw)

        self.assertEqual(config.to_dict(), raw)
        self.assertEqual(config.timeout_ms(), 5000)
        self.assertEqual(MCPServerConfig(type="local", timeout=750).timeout_ms(), 750)

    def test_command_string_is_wrapped(self):
        config = MCPServerConfig.from_dict({"type": "local", "command": "mcp-server"})
        self.assertEqual(config.command, ["mcp-server"])
        self.assertFalse(config.enabled)

    def test_invalid_entries_raise(self):
        for raw in ([], {"type": "local", "command": 3}, {"type": "local", "env": ["A=1"]},
                    {"type": "local", "timeout": "slow"}):
            with self.assertRaises(ConfigError, msg=str(raw)):
                MCPServerConfig.from_dict(raw)
