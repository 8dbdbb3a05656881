"""
Capture Session Registry
Runs one server-driven capture orchestrator per user as a background task
"""
import asyncio
from typing import Dict, Optional, Set, Tuple

from scan_server import logger
from scan_server.capture_orchestrator import CaptureOrchestrator, CaptureSettings, ScanStatus

# Track orchestrators and their running scan tasks
active_captures: Dict[int, CaptureOrchestrator] = {}
capture_tasks: Dict[int, asyncio.Task] = {}
# Cancelled runs that may still be finishing an oracle call
detached_tasks: Set[asyncio.Task] = set()


def get_orchestrator(user_id: int, oracle=None, settings: Optional[CaptureSettings] = None) -> Optional[CaptureOrchestrator]:
    """Existing orchestrator for a user, or a new one when an oracle is given"""
    orchestrator = active_captures.get(user_id)
    if orchestrator is None and oracle is not None:
        orchestrator = CaptureOrchestrator(oracle, user_id, settings=settings)
        active_captures[user_id] = orchestrator
    return orchestrator


async def _run_capture(user_id: int, orchestrator: CaptureOrchestrator, generation: int):
    """Background task driving one scan to its outcome"""
    try:
        outcome = await orchestrator.run(generation)
        if outcome is None:
            return
        if outcome.status == ScanStatus.COMPLETED.value:
            logger.log_success("Capture Finished", {
                "user_id": user_id,
                "scan_id": outcome.record["id"] if outcome.record else None,
                "frames": outcome.frame_count
            })
        else:
            logger.log_warning("Capture Ended", {
                "user_id": user_id,
                "status": outcome.status,
                "error": outcome.error
            })
    except asyncio.CancelledError:
        logger.log_warning("Capture Task Cancelled", {"user_id": user_id})
        raise
    except Exception as e:
        logger.log_error("Capture Task Failed", e, {"user_id": user_id})
    finally:
        if capture_tasks.get(user_id) is asyncio.current_task():
            del capture_tasks[user_id]


def start_capture(user_id: int, oracle, settings: Optional[CaptureSettings] = None) -> Tuple[bool, str, Dict]:
    """
    Begin a server-driven scan for a user

    Must be called from a running event loop.

    Returns:
        Tuple of (success, message, status snapshot)
    """
    orchestrator = get_orchestrator(user_id, oracle, settings)

    if not orchestrator.start_scan():
        return False, "Scan already in progress", orchestrator.snapshot()

    capture_tasks[user_id] = asyncio.create_task(_run_capture(user_id, orchestrator, orchestrator.generation))
    logger.log_capture("Capture Session Started", {"user_id": user_id})
    return True, "Scan started", orchestrator.snapshot()


def submit_frame(user_id: int, image: str) -> Tuple[bool, str, Optional[Dict]]:
    orchestrator = active_captures.get(user_id)
    if orchestrator is None:
        return False, "No active scan", None

    if not orchestrator.submit_frame(image):
        return False, "Not awaiting a frame", orchestrator.snapshot()
    return True, "Frame received", orchestrator.snapshot()


def resolve_prompt(user_id: int, choice: str) -> Tuple[bool, str, Optional[Dict]]:
    orchestrator = active_captures.get(user_id)
    if orchestrator is None:
        return False, "No active scan", None

    if not orchestrator.resolve_prompt(choice):
        return False, "No pending prompt for that choice", orchestrator.snapshot()
    return True, "Choice recorded", orchestrator.snapshot()


def cancel_capture(user_id: int) -> Tuple[bool, str, Optional[Dict]]:
    orchestrator = active_captures.get(user_id)
    if orchestrator is None:
        return False, "No active scan", None

    if not orchestrator.cancel():
        return False, "Scan is finalizing and can no longer be cancelled", orchestrator.snapshot()

    # The detached run exits at its next checkpoint; shutdown still waits for it
    task = capture_tasks.pop(user_id, None)
    if task is not None and not task.done():
        detached_tasks.add(task)
        task.add_done_callback(detached_tasks.discard)
    return True, "Scan cancelled", orchestrator.snapshot()


def get_status(user_id: int) -> Optional[Dict]:
    orchestrator = active_captures.get(user_id)
    return orchestrator.snapshot() if orchestrator else None


async def stop_all_captures():
    """Cancel every running scan task (server shutdown)"""
    tasks = list(capture_tasks.values()) + list(detached_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.log_warning("Capture Tasks Stopped", {"count": len(tasks)})
    capture_tasks.clear()
    detached_tasks.clear()
    active_captures.clear()
