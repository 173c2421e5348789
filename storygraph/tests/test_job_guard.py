import json
import os
import socket
import tempfile
import threading
import time
import unittest
from pathlib import Path

from storygraph.job_guard import FileLock, JobGuard, LockHeldError, UnknownJobTypeError, read_lock_info


def _pid_max() -> int:
    try:
        return int(Path("/proc/sys/kernel/pid_max").read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        # Sensible fallback on Linux.
        return 4194304


class TestFileLock(unittest.TestCase):
    def test_file_lock_reclaims_dead_pid_without_waiting_ttl(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "clustering.lock"

            # Fresh by mtime, but owned by a PID that cannot exist.
            dead_pid = _pid_max() + 1
            payload = {"owner": "test", "pid": dead_pid, "hostname": socket.gethostname(), "acquired_at": "now"}
            lock_path.write_text(json.dumps(payload), encoding="utf-8")

            lock = FileLock(lock_path, owner="test2", ttl_seconds=3600)
            lock.acquire()
            try:
                obj = json.loads(lock_path.read_text(encoding="utf-8"))
                self.assertEqual(int(obj.get("pid")), os.getpid())
                self.assertEqual(obj.get("owner"), "test2")
                self.assertEqual(obj.get("job_type"), "clustering")
            finally:
                lock.release()
            self.assertFalse(lock_path.exists())

    def test_live_lock_is_held(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "clustering.lock"
            with FileLock(lock_path, owner="first", ttl_seconds=3600):
                with self.assertRaises(LockHeldError):
                    FileLock(lock_path, owner="second", ttl_seconds=3600).acquire()
            self.assertFalse(lock_path.exists())

    def test_expired_lock_is_reclaimed(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "clustering.lock"
            lock_path.write_text("garbage", encoding="utf-8")
            old = time.time() - 7200
            os.utime(lock_path, (old, old))
            with FileLock(lock_path, owner="new", ttl_seconds=60) as lock:
                self.assertTrue(lock.acquired)

    def test_lock_file_records_job_and_holder(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "clustering.lock"
            with FileLock(lock_path, owner="scheduler", ttl_seconds=3600) as lock:
                self.assertEqual(lock.job_type, "clustering")
                info = read_lock_info(lock_path)
                assert info is not None
                self.assertEqual((info.job_type, info.owner, info.pid), ("clustering", "scheduler", os.getpid()))
                self.assertEqual(info.hostname, socket.gethostname())
                self.assertRegex(info.acquired_at, r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

                with self.assertRaises(LockHeldError) as cm:
                    FileLock(lock_path, owner="cron", ttl_seconds=3600).acquire()
                self.assertIn("clustering lock held by scheduler", str(cm.exception))
                self.assertIn(f"pid {os.getpid()}", str(cm.exception))


class TestJobGuard(unittest.TestCase):
    def test_second_start_is_rejected_until_finish(self) -> None:
        guard = JobGuard()
        self.assertTrue(guard.try_start("clustering"))
        self.assertFalse(guard.try_start("clustering"))
        # Different job types do not block each other.
        self.assertTrue(guard.try_start("ingestion"))

        guard.finish("clustering", {"stories_created": 1})
        self.assertFalse(guard.is_running("clustering"))
        self.assertTrue(guard.try_start("clustering"))

    def test_unknown_job_type(self) -> None:
        guard = JobGuard()
        with self.assertRaises(UnknownJobTypeError):
            guard.try_start("reindex")
        with self.assertRaises(ValueError):
            guard.finish("reindex", None)

    def test_status_reports_last_run_and_result(self) -> None:
        guard = JobGuard()
        status = guard.status()
        self.assertEqual(set(status), {"ingestion", "clustering"})
        self.assertEqual(status["clustering"], {"running": False, "last_run": None, "last_result": None})

        self.assertTrue(guard.try_start("clustering"))
        guard.finish("clustering", {"articles_processed": 5})

        st = guard.status()["clustering"]
        self.assertFalse(st["running"])
        self.assertRegex(st["last_run"], r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")
        self.assertEqual(st["last_result"], {"articles_processed": 5})

    def test_last_run_is_stamped_at_admission(self) -> None:
        guard = JobGuard()
        before = time.time()
        self.assertTrue(guard.try_start("clustering"))

        st = guard.status()["clustering"]
        self.assertTrue(st["running"])
        self.assertIsNotNone(st["last_run"])
        self.assertIsNone(st["last_result"])
        self.assertIsNone(guard.status()["ingestion"]["last_run"])

        # A rejected trigger leaves the admitted run's start time alone.
        started = guard._states["clustering"].last_run
        assert started is not None
        self.assertGreaterEqual(started, before)
        self.assertFalse(guard.try_start("clustering"))
        guard.finish("clustering", {"articles_processed": 2})
        self.assertEqual(guard._states["clustering"].last_run, started)

    def test_run_records_error_and_releases(self) -> None:
        guard = JobGuard()

        def boom() -> dict:
            raise RuntimeError("db unavailable")

        with self.assertRaises(RuntimeError):
            guard.run("clustering", boom)
        st = guard.status()["clustering"]
        self.assertFalse(st["running"])
        self.assertEqual(st["last_result"], {"error": "db unavailable"})
        self.assertEqual(guard.run("clustering", lambda: {"ok": 1}), {"ok": 1})

    def test_concurrent_triggers_run_body_once(self) -> None:
        guard = JobGuard()
        entered = threading.Event()
        release = threading.Event()
        calls: list[int] = []

        def body() -> dict:
            calls.append(1)
            entered.set()
            release.wait(5)
            return {"n": len(calls)}

        results: list = []
        worker = threading.Thread(target=lambda: results.append(guard.run("clustering", body)))
        worker.start()
        try:
            self.assertTrue(entered.wait(5))
            skipped = [guard.run("clustering", body) for _ in range(3)]
        finally:
            release.set()
            worker.join(5)

        self.assertEqual(skipped, [None, None, None])
        self.assertEqual(results, [{"n": 1}])
        self.assertEqual(len(calls), 1)

    def test_lock_dir_blocks_across_guards(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            first = JobGuard(lock_dir=Path(td), owner="first")
            second = JobGuard(lock_dir=Path(td), owner="second")

            self.assertTrue(first.try_start("clustering"))
            self.assertTrue((Path(td) / "clustering.lock").exists())
            self.assertFalse(second.try_start("clustering"))
            self.assertTrue(second.try_start("ingestion"))

            first.finish("clustering", {})
            self.assertFalse((Path(td) / "clustering.lock").exists())
            self.assertTrue(second.try_start("clustering"))
            second.finish("clustering", {})
            second.finish("ingestion", {})


if __name__ == "__main__":
    unittest.main()
