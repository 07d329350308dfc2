"""
Tests for config.py and endpoint resolution.
"""

import dataclasses
import json
import shutil
import tempfile
import unittest
from pathlib import Path

from pysuv.config import load_config, load_server_config
from pysuv.daemon.transport import TCP, UNIX, DaemonEndpoint, resolve_endpoint, split_host_port


class TestLoadConfig(unittest.TestCase):
    """Test cases for load_config."""

    def setUp(self):
        self.home = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.home, ignore_errors=True)

    def test_paths_live_under_home(self):
        config = load_config(home=self.home, environ={})
        self.assertEqual(config.home, self.home)
        self.assertEqual(config.sock_path, self.home / "pysuv.sock")
        self.assertEqual(config.config_file, self.home / "pysuv.json")
        self.assertEqual(config.program_config, self.home / "programs.json")
        self.assertEqual(config.plugin_dir, self.home / "cmdplugin")
        self.assertEqual(config.server_addr, "")
        self.assertFalse(config.debug)

    def test_home_from_environment(self):
        config = load_config(environ={"PYSUV_HOME": str(self.home)})
        self.assertEqual(config.home, self.home)

    def test_config_is_immutable(self):
        config = load_config(home=self.home, environ={})
        with self.assertRaises(dataclasses.FrozenInstanceError):
            config.server_addr = "127.0.0.1:1"

    def test_server_addr_precedence(self):
        (self.home / "pysuv.json").write_text(json.dumps({"server": {"rpc_addr": ":1000"}}))
        self.assertEqual(load_config(home=self.home, environ={}).server_addr, ":1000")

        (self.home / "env").write_text("PYSUV_SERVER_ADDR=:2000\nPYSUV_DEBUG=true\n")
        config = load_config(home=self.home, environ={})
        self.assertEqual(config.server_addr, ":2000")
        self.assertTrue(config.debug)

        config = load_config(
            home=self.home,
            environ={"PYSUV_SERVER_ADDR": ":3000", "PYSUV_DEBUG": "0"},
        )
        self.assertEqual(config.server_addr, ":3000")
        self.assertFalse(config.debug)

    def test_broken_server_config_is_ignored(self):
        path = self.home / "pysuv.json"
        path.write_text("{not json")
        self.assertEqual(load_server_config(path), {})
        self.assertEqual(load_config(home=self.home, environ={}).server_addr, "")

    def test_missing_server_config_returns_empty_dict(self):
        self.assertEqual(load_server_config(self.home / "missing.json"), {})


class TestResolveEndpoint(unittest.TestCase):
    """Test cases for resolve_endpoint."""

    def setUp(self):
        self.config = load_config(home=Path("/tmp/suvhome"), environ={})

    def test_empty_addr_uses_home_socket(self):
        endpoint = resolve_endpoint("", self.config)
        self.assertEqual(endpoint, DaemonEndpoint(UNIX, "/tmp/suvhome/pysuv.sock"))

    def test_unix_forms(self):
        self.assertEqual(resolve_endpoint("unix:/run/s.sock", self.config), DaemonEndpoint(UNIX, "/run/s.sock"))
        self.assertEqual(resolve_endpoint("/run/s.sock", self.config), DaemonEndpoint(UNIX, "/run/s.sock"))

    def test_network_forms(self):
        self.assertEqual(resolve_endpoint("localhost:9000", self.config), DaemonEndpoint(TCP, "localhost:9000"))
        self.assertEqual(split_host_port(":9000"), ("127.0.0.1", 9000))

    def test_string_form_round_trips(self):
        for addr in ("unix:/run/s.sock", "10.0.0.1:11313"):
            endpoint = resolve_endpoint(addr, self.config)
            self.assertEqual(resolve_endpoint(str(endpoint), self.config), endpoint)

    def test_invalid_network_address_raises(self):
        with self.assertRaises(ValueError):
            resolve_endpoint("localhost", self.config)
        with self.assertRaises(ValueError):
            resolve_endpoint("localhost:http", self.config)


if __name__ == "__main__":
    unittest.main()
