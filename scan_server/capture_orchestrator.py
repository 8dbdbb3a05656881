# Capture Orchestrator - six-pose capture state machine with oracle-gated validation
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from scan_server import config
from scan_server import logger
from scan_server import pose_protocol
from scan_server import scan_store
from scan_server.metric_validator import MetricSet, validate_metrics
from scan_server.pose_protocol import PoseStep

Frame = Union[bytes, str]


class ScanStatus(str, Enum):
    IDLE = "idle"
    POSITIONING = "positioning"
    SCANNING = "scanning"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class PromptChoice(str, Enum):
    RETRY = "retry"
    SKIP = "skip"


class ScanCancelled(Exception):
    """Raised inside a running scan once cancel() has been requested."""


@dataclass(frozen=True)
class CaptureAttempt:
    pose_step: PoseStep
    frame: Frame
    attempt_number: int


@dataclass
class CaptureSettings:
    max_retries: int = config.POSE_MAX_RETRIES
    settle_delay: float = config.POSITIONING_SETTLE_SECONDS
    capture_retry_delay: float = config.CAPTURE_RETRY_DELAY_SECONDS
    retry_delay: float = config.POSE_RETRY_DELAY_SECONDS
    transition_pause: float = config.POSE_TRANSITION_PAUSE_SECONDS
    min_frame_bytes: int = config.MIN_FRAME_BYTES
    frame_wait_timeout: float = config.FRAME_WAIT_TIMEOUT_SECONDS
    prompt_wait_timeout: float = config.PROMPT_WAIT_TIMEOUT_SECONDS


@dataclass
class ScanSession:
    """Accumulator for one scan; accepted_labels runs parallel to accepted_frames."""

    accepted_frames: List[Frame] = field(default_factory=list)
    accepted_labels: List[str] = field(default_factory=list)
    current_pose_index: int = 0
    status: ScanStatus = ScanStatus.IDLE

    def reset(self):
        self.accepted_frames.clear()
        self.accepted_labels.clear()
        self.current_pose_index = 0
        self.status = ScanStatus.IDLE


@dataclass
class ScanOutcome:
    status: str
    record: Optional[Dict] = None
    metrics: Optional[MetricSet] = None
    error: Optional[str] = None
    frame_count: int = 0
    notices: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "scan_id": self.record["id"] if self.record else None,
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "warnings": list(self.metrics.warnings) if self.metrics else [],
            "error": self.error,
            "frame_count": self.frame_count,
            "notices": list(self.notices),
        }


FrameSource = Callable[[PoseStep], Awaitable[Optional[Frame]]]
PromptHandler = Callable[[PoseStep, str], Awaitable[Union[PromptChoice, str]]]
SaveScan = Callable[[int, Frame, int, MetricSet], Dict]


class CaptureOrchestrator:
    """
    Drives one capture surface through the six-pose protocol.

    Frames come either from a capture callable or from submit_frame(); retry
    prompts are answered either by a prompt callable or by resolve_prompt().
    Everything inside a scan is sequential: each pose check gates the next pose.
    """

    def __init__(self, oracle, user_id: int, save_scan: SaveScan = scan_store.save_scan,
                 capture: Optional[FrameSource] = None, prompt: Optional[PromptHandler] = None,
                 on_cue: Optional[Callable[[PoseStep], None]] = None,
                 settings: Optional[CaptureSettings] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.oracle = oracle
        self.user_id = user_id
        self.settings = settings or CaptureSettings()
        self.session = ScanSession()
        self.outcome: Optional[ScanOutcome] = None
        self.notices: List[str] = []
        self.current_step: Optional[PoseStep] = None
        self.last_message: Optional[str] = None
        self.prompt_message: Optional[str] = None
        self.cue_count = 0

        self._save_scan = save_scan
        self._capture = capture
        self._prompt = prompt
        self._on_cue = on_cue
        self._sleep = sleep

        self._busy = False
        self._running = False
        self._generation = 0
        self._cancel_event: Optional[asyncio.Event] = None
        self._frames: Optional[asyncio.Queue] = None
        self._pending_prompt: Optional[asyncio.Future] = None
        self._awaiting_frame = False

    # ------------------------------------------------------------------
    # Inbound interface
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def status(self) -> ScanStatus:
        return self.session.status

    def start_scan(self) -> bool:
        """Begin a new scan; a no-op returning False while one is active"""
        if self._busy:
            logger.log_warning("Scan Already Active", {"user_id": self.user_id, "status": self.session.status.value})
            return False

        self._busy = True
        self._running = False
        self._generation += 1
        self._cancel_event = asyncio.Event()
        self._frames = asyncio.Queue()
        self._pending_prompt = None
        self._awaiting_frame = False

        self.session.reset()
        self.session.status = ScanStatus.POSITIONING
        self.outcome = None
        self.notices = []
        self.current_step = pose_protocol.pose_step(0)
        self.last_message = None
        self.prompt_message = None
        self.cue_count = 0

        logger.log_capture("Scan Started", {"user_id": self.user_id, "poses": len(pose_protocol.POSE_SEQUENCE)})
        return True

    def submit_frame(self, frame: Frame) -> bool:
        """Hand a captured frame to the running scan; only valid while a frame is awaited"""
        if self.session.status != ScanStatus.SCANNING or self._frames is None:
            return False
        # One frame per capture attempt; extras would be checked against the next pose
        if not self._awaiting_frame or not self._frames.empty():
            return False
        self._frames.put_nowait(frame)
        return True

    def resolve_prompt(self, choice: Union[PromptChoice, str]) -> bool:
        """Answer a pending retry/skip prompt"""
        try:
            choice = PromptChoice(choice)
        except ValueError:
            return False

        pending = self._pending_prompt
        if pending is None or pending.done():
            return False
        pending.set_result(choice)
        return True

    def cancel(self) -> bool:
        """
        Abandon the current scan and return to idle

        Refused while finalizing. Nothing is persisted; the accumulator is
        dropped. A run still waiting on the oracle is detached and its result
        ignored.
        """
        if self.session.status == ScanStatus.FINALIZING:
            logger.log_warning("Cancel Refused", {"user_id": self.user_id, "status": "finalizing"})
            return False

        if self._cancel_event is not None:
            self._cancel_event.set()

        self.session.reset()
        self._busy = False
        self._running = False
        self._generation += 1
        self._pending_prompt = None
        self._awaiting_frame = False
        self.prompt_message = None
        self.current_step = None

        logger.log_capture("Scan Cancelled", {"user_id": self.user_id})
        return True

    def snapshot(self) -> Dict[str, Any]:
        """Status view for polling clients"""
        step = self.current_step
        return {
            "status": self.session.status.value,
            "busy": self._busy,
            "pose_index": self.session.current_pose_index,
            "position": step.name if step else "Ready to scan",
            "pose": step.pose if step else None,
            "progress": step.progress if step else 0,
            "frames_accepted": len(self.session.accepted_frames),
            "awaiting_frame": self._awaiting_frame,
            "prompt": self.prompt_message,
            "message": self.last_message,
            "notices": list(self.notices),
            "cues": self.cue_count,
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }

    # ------------------------------------------------------------------
    # Scan loop
    # ------------------------------------------------------------------

    async def run(self, generation: Optional[int] = None) -> Optional[ScanOutcome]:
        """
        Run one full scan

        Starts a scan if none is prepared. Returns None when another run is
        already driving this surface.

        Args:
            generation: Scan this run was scheduled for; a scan cancelled
                before its run began comes back as cancelled
        """
        if generation is not None and generation != self._generation:
            return ScanOutcome(status="cancelled")

        if not self._busy:
            self.start_scan()
        elif self._running:
            logger.log_warning("Scan Already Running", {"user_id": self.user_id})
            return None

        generation = self._generation
        cancel_event = self._cancel_event
        self._running = True

        try:
            outcome = await self._run_scan(cancel_event)
        except ScanCancelled:
            outcome = ScanOutcome(status="cancelled", notices=list(self.notices))
        finally:
            if generation == self._generation:
                self._busy = False
                self._running = False
                self._pending_prompt = None
                self._awaiting_frame = False

        if generation == self._generation:
            self.outcome = outcome
        return outcome

    async def _run_scan(self, cancel_event: asyncio.Event) -> ScanOutcome:
        session = self.session
        steps = pose_protocol.POSE_SEQUENCE
        logger.log_lifecycle("SCAN START", f"user {self.user_id}")

        for index, step in enumerate(steps):
            self._checkpoint(cancel_event)
            await self._resolve_pose(cancel_event, index, step)
            session.current_pose_index = index + 1

        frames = list(session.accepted_frames)
        labels = list(session.accepted_labels)

        if not frames:
            session.status = ScanStatus.FAILED
            error = "No images were captured. Please try again."
            logger.log_warning("Scan Failed", {"user_id": self.user_id, "reason": error})
            return ScanOutcome(status=ScanStatus.FAILED.value, error=error, notices=list(self.notices))

        self._checkpoint(cancel_event)
        session.status = ScanStatus.FINALIZING
        self.current_step = None
        self.last_message = "Processing..."
        logger.log_capture("Finalizing Scan", {"user_id": self.user_id, "frames": len(frames), "labels": ", ".join(labels)})

        raw = await asyncio.to_thread(self.oracle.extract_metrics, frames, labels)
        metrics = validate_metrics(raw)

        try:
            record = await asyncio.to_thread(self._save_scan, self.user_id, frames[0], len(frames), metrics)
        except Exception as e:
            session.status = ScanStatus.FAILED
            session.accepted_frames.clear()
            session.accepted_labels.clear()
            error = f"Save failed: {e}"
            logger.log_error("Scan Save Failed", e, {"user_id": self.user_id})
            return ScanOutcome(status=ScanStatus.FAILED.value, metrics=metrics, error=error,
                               frame_count=len(frames), notices=list(self.notices))

        session.status = ScanStatus.COMPLETED
        session.accepted_frames.clear()
        session.accepted_labels.clear()
        self.last_message = "Scan complete"
        logger.log_success("Scan Completed", {"user_id": self.user_id, "scan_id": record.get("id"), "frames": len(frames)})
        return ScanOutcome(status=ScanStatus.COMPLETED.value, record=record, metrics=metrics,
                           frame_count=len(frames), notices=list(self.notices))

    async def _resolve_pose(self, cancel_event: asyncio.Event, index: int, step: PoseStep):
        """Capture and validate one pose until it is accepted, skipped or abandoned"""
        session = self.session
        attempt = 0

        while True:
            self.current_step = step

            if index == 0 and attempt == 0:
                session.status = ScanStatus.POSITIONING
                await self._pause(cancel_event, self.settings.settle_delay)

            session.status = ScanStatus.SCANNING
            self._checkpoint(cancel_event)
            frame = await self._until_cancelled(cancel_event, self._next_frame(step))

            if not self._frame_ok(frame):
                attempt += 1
                if attempt < self.settings.max_retries:
                    logger.log_warning("Capture Failed", {"pose": step.name, "attempt": f"{attempt}/{self.settings.max_retries}"})
                    await self._pause(cancel_event, self.settings.capture_retry_delay)
                    continue
                self._notice(f"Could not capture image for {step.name}. Skipping this position.")
                return

            capture = CaptureAttempt(step, frame, attempt + 1)
            self._checkpoint(cancel_event)
            result = await asyncio.to_thread(self.oracle.check_pose, frame, step.pose)
            self._checkpoint(cancel_event)

            if result.ready:
                self._accept(capture, "accepted")
                await self._advance(cancel_event, index)
                return

            if result.transport_error:
                logger.log_warning("Pose Check Unavailable", {"pose": step.name, "reason": result.message, "action": "accepting frame"})
                self.last_message = "Pose check unavailable, continuing"
                self._accept(capture, "accepted without check")
                await self._advance(cancel_event, index)
                return

            attempt += 1
            message = result.message or f"You're not in the correct position. Please {step.name.lower()}."
            self.last_message = message

            if attempt < self.settings.max_retries:
                choice = await self._until_cancelled(
                    cancel_event, self._ask(step, f"{message} Would you like to retake it?")
                )
                if choice == PromptChoice.RETRY:
                    logger.log_capture("Pose Retry", {"pose": step.name, "attempt": attempt + 1})
                    await self._pause(cancel_event, self.settings.retry_delay)
                    continue
                self._accept(capture, "skipped")
                return

            self._notice(f"Max retries reached for {step.name}. Skipping this position after {self.settings.max_retries} attempts.")
            self._accept(capture, "max retries")
            return

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _checkpoint(self, cancel_event: asyncio.Event):
        if cancel_event.is_set():
            raise ScanCancelled()

    async def _until_cancelled(self, cancel_event: asyncio.Event, awaitable: Awaitable):
        """Await something, giving up as soon as the scan is cancelled"""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task not in done:
            raise ScanCancelled()
        self._checkpoint(cancel_event)
        return task.result()

    async def _pause(self, cancel_event: asyncio.Event, seconds: float):
        if seconds > 0:
            await self._until_cancelled(cancel_event, self._sleep(seconds))

    async def _next_frame(self, step: PoseStep) -> Optional[Frame]:
        if self._capture is not None:
            try:
                return await self._capture(step)
            except Exception as e:
                logger.log_error("Capture Error", e, {"pose": step.name})
                return None

        while not self._frames.empty():
            self._frames.get_nowait()
        self._awaiting_frame = True
        try:
            return await asyncio.wait_for(self._frames.get(), timeout=self.settings.frame_wait_timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self._awaiting_frame = False

    async def _ask(self, step: PoseStep, message: str) -> PromptChoice:
        if self._prompt is not None:
            return PromptChoice(await self._prompt(step, message))

        self._pending_prompt = asyncio.get_running_loop().create_future()
        self.prompt_message = message
        try:
            return await asyncio.wait_for(self._pending_prompt, timeout=self.settings.prompt_wait_timeout)
        except asyncio.TimeoutError:
            logger.log_warning("Prompt Timed Out", {"pose": step.name, "action": "skipping"})
            return PromptChoice.SKIP
        finally:
            self._pending_prompt = None
            self.prompt_message = None

    def _frame_ok(self, frame: Optional[Frame]) -> bool:
        if isinstance(frame, (bytes, bytearray)):
            return len(frame) >= self.settings.min_frame_bytes
        if isinstance(frame, str):
            return len(frame) >= config.MIN_IMAGE_BASE64_LENGTH
        return False

    def _accept(self, capture: CaptureAttempt, reason: str):
        self.session.accepted_frames.append(capture.frame)
        self.session.accepted_labels.append(capture.pose_step.description)
        logger.log_capture("Pose Resolved", {
            "pose": capture.pose_step.name,
            "attempt": capture.attempt_number,
            "reason": reason,
            "frames": len(self.session.accepted_frames)
        })

    async def _advance(self, cancel_event: asyncio.Event, index: int):
        steps = pose_protocol.POSE_SEQUENCE
        if index + 1 >= len(steps):
            self.last_message = "Processing..."
            return

        self.current_step = steps[index + 1]
        self.cue_count += 1
        if self._on_cue is not None:
            self._on_cue(steps[index + 1])
        await self._pause(cancel_event, self.settings.transition_pause)

    def _notice(self, message: str):
        self.notices.append(message)
        self.last_message = message
        logger.log_warning("Capture Notice", {"message": message})
