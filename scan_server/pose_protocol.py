# Pose Protocol - the fixed six-step head pose sequence
from dataclasses import dataclass
from typing import List, Optional

POSES = ("center", "left", "right", "up", "down")


@dataclass(frozen=True)
class PoseStep:
    """One step of the capture sweep."""

    name: str  # display label shown to the user
    pose: str  # one of POSES
    progress: int  # 0-100, sweep progress when this step is shown
    description: str  # how the frame is labeled for the metric oracle


# center appears first and last to bracket the sweep with a stable reference frame
POSE_SEQUENCE = (
    PoseStep("Center", "center", 0, "center (forward-facing)"),
    PoseStep("Look Left", "left", 20, "looking left (left profile)"),
    PoseStep("Look Right", "right", 40, "looking right (right profile)"),
    PoseStep("Look Up", "up", 60, "looking up (upward angle)"),
    PoseStep("Look Down", "down", 80, "looking down (downward angle)"),
    PoseStep("Center Again", "center", 100, "center again (forward-facing)"),
)

ADDITIONAL_ANGLE_LABEL = "additional angle"

# Phrasing used inside oracle prompts
POSE_PHRASES = {
    "center": "looking straight ahead",
    "left": "looking to their left",
    "right": "looking to their right",
    "up": "looking up",
    "down": "looking down",
}


def is_valid_pose(pose: Optional[str]) -> bool:
    return isinstance(pose, str) and pose.lower() in POSES


def pose_step(index: int) -> PoseStep:
    """Return the step at a sequence index; raises IndexError outside 0..5."""
    if index < 0 or index >= len(POSE_SEQUENCE):
        raise IndexError(f"Pose index out of range: {index}")
    return POSE_SEQUENCE[index]


def steps_for_pose(pose: str) -> List[PoseStep]:
    return [step for step in POSE_SEQUENCE if step.pose == pose.lower()]


def pose_label(index: int) -> str:
    """Label for the image at position index of a scan upload."""
    if 0 <= index < len(POSE_SEQUENCE):
        return POSE_SEQUENCE[index].description
    return ADDITIONAL_ANGLE_LABEL


def pose_labels(count: int) -> List[str]:
    return [pose_label(i) for i in range(count)]


def label_for_pose(pose: str) -> str:
    """Prompt label for a bare pose id (used when a client names poses explicitly)."""
    matches = steps_for_pose(pose) if is_valid_pose(pose) else []
    return matches[0].description if matches else ADDITIONAL_ANGLE_LABEL


def pose_phrase(pose: str) -> str:
    return POSE_PHRASES.get(pose.lower(), POSE_PHRASES["center"])
