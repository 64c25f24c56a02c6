import threading
import unittest
from unittest import mock

from radisync.models import AppConfig
from radisync.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def test_startup_and_manual_runs(self) -> None:
        config_manager = mock.Mock()
        config_manager.load.return_value = AppConfig()
        triggers: list[str] = []
        ran_twice = threading.Event()

        def run_once(trigger: str) -> list:
            triggers.append(trigger)
            if len(triggers) >= 2:
                ran_twice.set()
            return []

        engine = mock.Mock()
        engine.run_once.side_effect = run_once
        scheduler = SyncScheduler(engine, config_manager)

        scheduler.start()
        try:
            scheduler.trigger_manual()
            self.assertTrue(ran_twice.wait(timeout=5))
        finally:
            scheduler.stop()

        self.assertEqual(triggers[:2], ["startup", "manual"])

    def test_crashing_run_is_logged(self) -> None:
        engine = mock.Mock()
        engine.run_once.side_effect = RuntimeError("boom")
        scheduler = SyncScheduler(engine, mock.Mock())

        with self.assertLogs("radisync.scheduler", level="ERROR") as logs:
            scheduler._run("scheduled")

        self.assertIn("Sync run crashed (scheduled)", logs.output[0])


if __name__ == "__main__":
    unittest.main()
