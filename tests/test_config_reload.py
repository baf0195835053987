import asyncio
import os
import tempfile
import unittest
from pathlib import Path

from protokollkoppler.config import KopplerConfig
from protokollkoppler.config_reload import ConfigReloadWatcher, event_targets_config


class EventPathMatchTests(unittest.TestCase):
    def test_matches_same_filename_for_absolute_path(self) -> None:
        self.assertTrue(event_targets_config("/tmp/work/config.yaml", "config.yaml"))

    def test_matches_same_filename_for_relative_path(self) -> None:
        self.assertTrue(event_targets_config("config.yaml", "config.yaml"))

    def test_matches_bytes_path(self) -> None:
        self.assertTrue(event_targets_config(b"/tmp/work/config.yaml", "config.yaml"))

    def test_does_not_match_different_filename(self) -> None:
        self.assertFalse(event_targets_config("/tmp/work/other.yaml", "config.yaml"))

    def test_does_not_match_none(self) -> None:
        self.assertFalse(event_targets_config(None, "config.yaml"))


class ReloadTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.config_file = Path(self._tmp.name) / "config.yaml"
        self.config_file.write_text("listen_port: 9000\n", encoding="utf-8")
        self.reloaded: list[KopplerConfig] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def _on_reload(self, cfg: KopplerConfig) -> None:
        self.reloaded.append(cfg)

    def _bump_mtime(self) -> None:
        stat = self.config_file.stat()
        os.utime(self.config_file, (stat.st_atime, stat.st_mtime + 5))

    def test_unchanged_file_is_not_reloaded(self) -> None:
        watcher = ConfigReloadWatcher(config_file=self.config_file, on_reload=self._on_reload)

        self.assertFalse(asyncio.run(watcher.reload_if_changed()))
        self.assertEqual(self.reloaded, [])

    def test_changed_file_is_reloaded_once(self) -> None:
        watcher = ConfigReloadWatcher(config_file=self.config_file, on_reload=self._on_reload)
        self.config_file.write_text("listen_port: 9100\n", encoding="utf-8")
        self._bump_mtime()

        self.assertTrue(asyncio.run(watcher.reload_if_changed()))
        self.assertFalse(asyncio.run(watcher.reload_if_changed()))
        self.assertEqual([cfg.listen_port for cfg in self.reloaded], [9100])

    def test_broken_config_keeps_current_one(self) -> None:
        def failing_loader(_path: str) -> KopplerConfig:
            raise ValueError("broken yaml")

        watcher = ConfigReloadWatcher(
            config_file=self.config_file,
            on_reload=self._on_reload,
            loader=failing_loader,
        )

        self.assertFalse(asyncio.run(watcher.reload_if_changed(force=True)))
        self.assertEqual(self.reloaded, [])


if __name__ == "__main__":
    unittest.main()
