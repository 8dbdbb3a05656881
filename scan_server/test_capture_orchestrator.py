import asyncio
import unittest

from scan_server import config
from scan_server import pose_protocol
from scan_server.capture_orchestrator import (
    CaptureOrchestrator,
    CaptureSettings,
    PromptChoice,
    ScanStatus,
)
from scan_server.oracle_client import OracleClient, PoseCheckResult
from scan_server.scan_store import ScanPersistenceError

GOOD_METRICS = {
    "water_retention": 30.0,
    "inflammation_index": 34.0,
    "lymph_congestion_score": 41.0,
    "facial_fat_layer": 22.0,
    "definition_score": 62.0,
    "potential_ceiling": 0,
}

FAST = CaptureSettings(
    settle_delay=0,
    capture_retry_delay=0,
    retry_delay=0,
    transition_pause=0,
    frame_wait_timeout=1,
    prompt_wait_timeout=1,
)

EXPECTED_LABELS = [step.description for step in pose_protocol.POSE_SEQUENCE]


def frame_for(step, attempt=0):
    return (f"{step.pose}-{attempt}-".encode() + b"\xff\xd8jpeg") * 10


class FakeOracle:
    def __init__(self, verdict=None, metrics=None):
        self.verdict = verdict or (lambda pose, call: PoseCheckResult.accepted("User is in position"))
        self.metrics = GOOD_METRICS if metrics is None else metrics
        self.check_calls = []
        self.extract_calls = []

    def check_pose(self, frame, required_pose="center"):
        self.check_calls.append((frame, required_pose))
        return self.verdict(required_pose, len(self.check_calls))

    def extract_metrics(self, frames, pose_labels=None):
        self.extract_calls.append((list(frames), list(pose_labels)))
        return dict(self.metrics)


class FakeStore:
    def __init__(self, error=None):
        self.error = error
        self.saved = []

    def __call__(self, user_id, center_frame, frame_count, metrics):
        if self.error is not None:
            raise self.error
        self.saved.append((user_id, center_frame, frame_count, metrics))
        return {"id": len(self.saved), "user_id": user_id, "frame_count": frame_count, **metrics.to_dict()}


class ScriptedCamera:
    """Capture callable that returns one frame per call (None entries are failures)"""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []

    async def __call__(self, step):
        self.calls.append(step.pose)
        if len(self.calls) <= self.failures:
            return None
        return frame_for(step, len(self.calls))


def always(choice):
    async def prompt(step, message):
        return choice
    return prompt


def semantic_reject(pose, call):
    return PoseCheckResult.rejected(f"User is not looking {pose}")


async def wait_for_status(orchestrator, status, attempts=200):
    for _ in range(attempts):
        if orchestrator.status == status:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"orchestrator never reached {status}")


class CaptureOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    def build(self, oracle=None, store=None, camera=None, prompt=None, **kwargs):
        self.oracle = oracle or FakeOracle()
        self.store = store or FakeStore()
        self.camera = camera or ScriptedCamera()
        settings = kwargs.pop("settings", FAST)
        return CaptureOrchestrator(
            self.oracle, user_id=7, save_scan=self.store, capture=self.camera,
            prompt=prompt or always(PromptChoice.SKIP), settings=settings, **kwargs
        )

    async def test_happy_path(self) -> None:
        cues = []
        orchestrator = self.build(on_cue=lambda step: cues.append(step.pose))
        outcome = await orchestrator.run()

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(outcome.frame_count, 6)
        self.assertEqual([pose for _, pose in self.oracle.check_calls],
                         ["center", "left", "right", "up", "down", "center"])
        self.assertEqual(len(self.oracle.extract_calls), 1)
        frames, labels = self.oracle.extract_calls[0]
        self.assertEqual(len(frames), 6)
        self.assertEqual(labels, EXPECTED_LABELS)
        self.assertEqual(cues, ["left", "right", "up", "down", "center"])
        self.assertEqual(orchestrator.status, ScanStatus.COMPLETED)
        self.assertFalse(orchestrator.busy)

        user_id, center_frame, frame_count, metrics = self.store.saved[0]
        self.assertEqual(user_id, 7)
        self.assertEqual(center_frame, frames[0])
        self.assertEqual(frame_count, 6)
        self.assertEqual(metrics.definition_score, 62.0)

    async def test_all_rejected_user_skips(self) -> None:
        orchestrator = self.build(oracle=FakeOracle(verdict=semantic_reject), prompt=always("skip"))
        outcome = await orchestrator.run()

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(len(self.oracle.check_calls), 6)
        frames, labels = self.oracle.extract_calls[0]
        self.assertEqual(len(frames), 6)
        self.assertEqual(labels, EXPECTED_LABELS)

    async def test_retry_until_forced_skip(self) -> None:
        orchestrator = self.build(oracle=FakeOracle(verdict=semantic_reject), prompt=always(PromptChoice.RETRY))
        outcome = await orchestrator.run()

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(len(self.oracle.check_calls), 6 * config.POSE_MAX_RETRIES)
        self.assertEqual(len(self.oracle.extract_calls[0][0]), 6)
        self.assertEqual(len(outcome.notices), 6)
        self.assertIn("after 3 attempts", outcome.notices[0])

    async def test_retry_then_accept_uses_latest_frame(self) -> None:
        def verdict(pose, call):
            if call == 1:
                return PoseCheckResult.rejected("Face is obstructed")
            return PoseCheckResult.accepted("ok")

        orchestrator = self.build(oracle=FakeOracle(verdict=verdict), prompt=always("retry"))
        outcome = await orchestrator.run()

        self.assertEqual(outcome.frame_count, 6)
        first_frame = self.oracle.extract_calls[0][0][0]
        self.assertEqual(first_frame, self.oracle.check_calls[1][0])

    async def test_credentials_absent(self) -> None:
        oracle = OracleClient(api_key="", enabled=True)
        store = FakeStore()
        orchestrator = CaptureOrchestrator(oracle, user_id=7, save_scan=store, capture=ScriptedCamera(), settings=FAST)

        result = oracle.check_pose(frame_for(pose_protocol.pose_step(0)), "center")
        self.assertFalse(result.ready)
        self.assertTrue(result.message)

        outcome = await orchestrator.run()

        self.assertEqual(outcome.status, "completed")
        self.assertEqual(outcome.frame_count, 6)
        self.assertEqual(store.saved[0][3].to_dict(), config.DEFAULT_METRICS)

    async def test_low_spread_is_saved_unchanged(self) -> None:
        flat = {name: 50 for name in config.SCORED_METRICS}
        orchestrator = self.build(oracle=FakeOracle(metrics=flat))
        outcome = await orchestrator.run()

        self.assertEqual(outcome.status, "completed")
        saved = self.store.saved[0][3]
        for name in config.SCORED_METRICS:
            self.assertEqual(getattr(saved, name), 50.0)
        self.assertEqual(len(outcome.metrics.warnings), 1)
        self.assertEqual(outcome.to_dict()["warnings"], list(outcome.metrics.warnings))

    async def test_capture_failures_are_retried(self) -> None:
        orchestrator = self.build(camera=ScriptedCamera(failures=2))
        outcome = await orchestrator.run()

        self.assertEqual(outcome.frame_count, 6)
        self.assertEqual(self.camera.calls[:3], ["center", "center", "center"])
        self.assertEqual(outcome.notices, [])

    async def test_no_frames_captured(self) -> None:
        orchestrator = self.build(camera=ScriptedCamera(failures=100))
        outcome = await orchestrator.run()

        self.assertEqual(outcome.status, "failed")
        self.assertEqual(outcome.error, "No images were captured. Please try again.")
        self.assertEqual(len(self.camera.calls), 6 * config.POSE_MAX_RETRIES)
        self.assertEqual(self.oracle.extract_calls, [])
        self.assertEqual(self.store.saved, [])
        self.assertEqual(orchestrator.status, ScanStatus.FAILED)

    async def test_save_failure(self) -> None:
        orchestrator = self.build(store=FakeStore(error=ScanPersistenceError("disk full")))
        outcome = await orchestrator.run()

        self.assertEqual(outcome.status, "failed")
        self.assertEqual(outcome.error, "Save failed: disk full")
        self.assertEqual(outcome.frame_count, 6)
        self.assertEqual(orchestrator.status, ScanStatus.FAILED)

    async def test_start_is_noop_while_busy(self) -> None:
        orchestrator = self.build()
        self.assertTrue(orchestrator.start_scan())
        self.assertFalse(orchestrator.start_scan())
        self.assertEqual(orchestrator.status, ScanStatus.POSITIONING)

    async def test_cancel_from_idle(self) -> None:
        orchestrator = self.build()
        self.assertTrue(orchestrator.cancel())
        self.assertEqual(orchestrator.status, ScanStatus.IDLE)

    async def test_cancel_while_scanning(self) -> None:
        never = asyncio.Event()

        async def stalled_camera(step):
            if step.pose == "left":
                await never.wait()
            return frame_for(step)

        orchestrator = self.build(camera=stalled_camera)
        task = asyncio.create_task(orchestrator.run())
        for _ in range(200):
            if len(orchestrator.session.accepted_frames) == 1 and orchestrator.status == ScanStatus.SCANNING:
                break
            await asyncio.sleep(0)

        self.assertTrue(orchestrator.cancel())
        self.assertEqual(orchestrator.status, ScanStatus.IDLE)
        self.assertEqual(orchestrator.session.accepted_frames, [])

        outcome = await task
        self.assertEqual(outcome.status, "cancelled")
        self.assertEqual(self.oracle.extract_calls, [])
        self.assertEqual(self.store.saved, [])

        self.assertTrue(orchestrator.start_scan())
        self.assertEqual(orchestrator.session.accepted_frames, [])

    async def test_cancel_while_positioning(self) -> None:
        never = asyncio.Event()

        async def stalled_sleep(seconds):
            await never.wait()

        settings = CaptureSettings(settle_delay=1, capture_retry_delay=0, retry_delay=0, transition_pause=0)
        orchestrator = self.build(settings=settings, sleep=stalled_sleep)
        task = asyncio.create_task(orchestrator.run())
        await wait_for_status(orchestrator, ScanStatus.POSITIONING)
        await asyncio.sleep(0)

        self.assertTrue(orchestrator.cancel())
        outcome = await task
        self.assertEqual(outcome.status, "cancelled")
        self.assertEqual(self.camera.calls, [])
        self.assertEqual(orchestrator.status, ScanStatus.IDLE)

    async def test_cancel_refused_while_finalizing(self) -> None:
        attempts = []

        def saving_store(user_id, center_frame, frame_count, metrics):
            attempts.append(orchestrator.cancel())
            return {"id": 1}

        orchestrator = self.build(store=saving_store)
        outcome = await orchestrator.run()

        self.assertEqual(attempts, [False])
        self.assertEqual(outcome.status, "completed")

    async def test_frames_and_prompts_from_a_remote_client(self) -> None:
        oracle = FakeOracle(verdict=semantic_reject)
        orchestrator = CaptureOrchestrator(oracle, user_id=7, save_scan=FakeStore(), settings=FAST)
        self.assertFalse(orchestrator.submit_frame(b"too early"))

        task = asyncio.create_task(orchestrator.run())
        for _ in range(5000):
            if task.done():
                break
            snapshot = orchestrator.snapshot()
            if snapshot["prompt"]:
                orchestrator.resolve_prompt("skip")
            elif snapshot["awaiting_frame"]:
                step = pose_protocol.pose_step(snapshot["pose_index"])
                orchestrator.submit_frame(frame_for(step))
            await asyncio.sleep(0.001)

        outcome = await task
        self.assertEqual(outcome.status, "completed")
        self.assertEqual(outcome.frame_count, 6)
        self.assertEqual(orchestrator.snapshot()["outcome"]["status"], "completed")
        self.assertFalse(orchestrator.resolve_prompt("skip"))

    async def test_extra_frames_never_reach_the_next_pose(self) -> None:
        oracle = FakeOracle()
        orchestrator = CaptureOrchestrator(oracle, user_id=7, save_scan=FakeStore(), settings=FAST)
        task = asyncio.create_task(orchestrator.run())

        for _ in range(200):
            if orchestrator.snapshot()["awaiting_frame"]:
                break
            await asyncio.sleep(0)
        first = b"CENTER-1" * 20
        self.assertTrue(orchestrator.submit_frame(first))
        self.assertFalse(orchestrator.submit_frame(b"CENTER-2" * 20))

        for _ in range(5000):
            if task.done():
                break
            snapshot = orchestrator.snapshot()
            if snapshot["awaiting_frame"]:
                step = pose_protocol.pose_step(snapshot["pose_index"])
                orchestrator.submit_frame(frame_for(step))
            else:
                self.assertFalse(orchestrator.submit_frame(b"STRAY" * 40))
            await asyncio.sleep(0.001)

        outcome = await task
        self.assertEqual(outcome.frame_count, 6)
        self.assertEqual(oracle.check_calls[0], (first, "center"))
        checked = [frame for frame, _ in oracle.check_calls]
        self.assertNotIn(b"CENTER-2" * 20, checked)
        self.assertNotIn(b"STRAY" * 40, checked)
        for (frame, pose), step in zip(oracle.check_calls[1:], pose_protocol.POSE_SEQUENCE[1:]):
            self.assertEqual(pose, step.pose)
            self.assertTrue(frame.startswith(f"{step.pose}-".encode()))

    async def test_resolve_prompt_rejects_unknown_choice(self) -> None:
        orchestrator = self.build()
        self.assertFalse(orchestrator.resolve_prompt("maybe"))


if __name__ == "__main__":
    unittest.main()
