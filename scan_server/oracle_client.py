# Oracle Client - Groq vision model calls for pose checks and metric extraction
import base64
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from groq import Groq

from scan_server import config
from scan_server import logger
from scan_server import pose_protocol


# ============================================================================
# ORACLE CONTENT (what a chat completion can hand back)
# ============================================================================

@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class BlockContent:
    blocks: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class NoContent:
    reason: str = "No response from AI"


OracleContent = Union[TextContent, BlockContent, NoContent]


def _block_as_dict(block: Any) -> Optional[Dict[str, Any]]:
    if isinstance(block, dict):
        return block
    block_type = getattr(block, "type", None)
    if block_type is None:
        return None
    return {"type": block_type, "text": getattr(block, "text", None)}


def unwrap_content(content: Any) -> OracleContent:
    """
    Classify a raw message content value

    Args:
        content: message.content from a chat completion (string, list of blocks or None)

    Returns:
        TextContent, BlockContent or NoContent
    """
    if isinstance(content, str):
        if not content.strip():
            return NoContent("Empty response from AI")
        return TextContent(content)

    if isinstance(content, (list, tuple)):
        blocks = tuple(b for b in (_block_as_dict(item) for item in content) if b is not None)
        if not blocks:
            return NoContent("Empty content blocks from AI")
        return BlockContent(blocks)

    return NoContent()


def content_text(content: OracleContent) -> Optional[str]:
    """Flatten oracle content to text; None when there is nothing to parse"""
    if isinstance(content, TextContent):
        return content.text

    if isinstance(content, BlockContent):
        parts = [
            block.get("text") for block in content.blocks
            if block.get("type") in ("text", "output_text") and isinstance(block.get("text"), str)
        ]
        text = "".join(parts).strip()
        return text or None

    return None


def message_content(response: Any) -> OracleContent:
    """Pull the first choice's message content out of a chat completion"""
    choices = getattr(response, "choices", None)
    if not choices:
        return NoContent()
    message = getattr(choices[0], "message", None)
    if message is None:
        return NoContent()
    return unwrap_content(getattr(message, "content", None))


def extract_json(text: Optional[str]) -> Optional[Any]:
    """
    Safely extract JSON from an LLM response

    Tries the whole text first, then strips code fences and takes the
    outermost {...} object.
    """
    if not text:
        return None

    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    text = re.sub(r"```json|```", "", text, flags=re.IGNORECASE).strip()
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        return None

    try:
        return json.loads(match.group())
    except json.JSONDecodeError:
        return None


def as_json_object(parsed: Any) -> Optional[Dict[str, Any]]:
    """Only a top-level JSON object is usable; arrays and scalars are rejected"""
    if isinstance(parsed, dict):
        return parsed
    return None


# ============================================================================
# FRAMES
# ============================================================================

def encode_frame(frame: Union[bytes, str, None]) -> Optional[str]:
    """
    Normalize a frame to bare base64

    Accepts raw image bytes, base64 text, or a data: URL.
    """
    if frame is None:
        return None
    if isinstance(frame, (bytes, bytearray)):
        if not frame:
            return None
        return base64.b64encode(bytes(frame)).decode("ascii")
    if isinstance(frame, str):
        data = frame.split(",", 1)[1] if "," in frame else frame
        return data.strip() or None
    return None


def image_block(base64_data: str) -> Dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:image/jpeg;base64,{base64_data}"},
    }


# ============================================================================
# POSE CHECK
# ============================================================================

@dataclass(frozen=True)
class PoseCheckResult:
    """
    Outcome of a single-frame pose check.

    confidence is a display affordance (90 when accepted, 0 otherwise), not a
    probability. transport_error separates "the oracle said no" from "the
    oracle could not be asked".
    """

    ready: bool
    correct_position: bool
    message: str
    confidence: int
    transport_error: bool = False

    @classmethod
    def accepted(cls, message: str) -> "PoseCheckResult":
        return cls(True, True, message, 90)

    @classmethod
    def rejected(cls, message: str, transport_error: bool = False) -> "PoseCheckResult":
        return cls(False, False, message, 0, transport_error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "correctPosition": self.correct_position,
            "message": self.message,
            "confidence": self.confidence,
            "transportError": self.transport_error,
        }


POSE_QUESTIONS = {
    pose: (
        f"Does it look like a user is {phrase}, there are no objects in the way, "
        f"AND they are NOT wearing glasses?"
    )
    for pose, phrase in pose_protocol.POSE_PHRASES.items()
}


def build_pose_check_prompt(required_pose: str) -> str:
    """Prompt asking the oracle whether one frame satisfies a pose"""
    pose = required_pose.lower() if pose_protocol.is_valid_pose(required_pose) else "center"
    phrase = pose_protocol.pose_phrase(pose)
    short = "straight ahead" if pose == "center" else pose

    return f"""{POSE_QUESTIONS[pose]}

Return ONLY a JSON object with this EXACT structure:
{{
  "correctPosition": true/false,
  "message": "brief description"
}}

RULES:
- correctPosition: true ONLY if ALL of the following are true:
  1. It looks like a user is {phrase}
  2. There are no objects blocking their face (no hands, objects, or significant obstructions)
  3. The user is NOT wearing glasses (eyeglasses/sunglasses) - glasses obstruct facial analysis and must be removed
  Be lenient on position - if they are approximately in the correct position and clearly visible, return true. But be strict on glasses - if glasses are visible, return false.
- message: Brief explanation like "User is looking {short}" or "User is not looking {short}" or "No user detected" or "Face is obstructed" or "Please remove glasses for accurate scanning"

Return ONLY the JSON, no other text."""


# ============================================================================
# METRIC EXTRACTION
# ============================================================================

METRIC_SYSTEM_PROMPT = (
    "You are a consistent facial biometric analyst. Assign precise numeric scores (0-100) "
    "based on visual assessment. Each metric must have a different value. Use the provided "
    "scoring anchors as reference points for consistency across analyses."
)

METRIC_RUBRIC = """STANDARDIZED SCORING GUIDELINES - Use these visual anchors:

1. WATER RETENTION % (0-100, lower is better):
   Use CENTER images primarily, and check SIDE PROFILES and the UPWARD angle.
   Look at under-eye bags, cheek fullness, jaw softness and neck pooling.
   SCORING ANCHORS:
   - 15: Very lean, sharp jaw from all angles, minimal under-eye bags, no pooling
   - 30: Normal lean, visible jaw definition from sides, slight under-eye softness
   - 45: Moderate puffiness, soft jaw from sides, noticeable under-eye bags, some pooling
   - 60: Significant puffiness, blurred jaw in profiles, prominent bags, visible pooling
   - 75: Very puffy, minimal jaw definition from sides, heavy bags, significant pooling

2. INFLAMMATION INDEX / PUFFINESS INDEX (0-100, lower is better):
   Use CENTER, SIDE PROFILES and UP angles.
   Look at cheek puffiness, jaw softness, eye area reduction and face shape deviation.
   SCORING ANCHORS:
   - 18: Very lean from all angles, sharp jaw in profiles, clean neck line, eyes fully open
   - 35: Normal from all angles, defined jaw in profiles, slight softness
   - 50: Moderate puffiness in center and sides, soft jaw, some eye reduction
   - 65: Significant puffiness, blurred jaw in profiles, noticeable face rounding
   - 80: Very puffy from all angles, minimal jaw definition, heavy swelling

3. LYMPH CONGESTION SCORE (0-100, lower is better):
   Use the LEFT PROFILE, RIGHT PROFILE and UPWARD angle images.
   Look at jaw definition quality, submental pooling, lower face heaviness and neck/jaw junction clarity.
   SCORING ANCHORS:
   - 15: Excellent drainage, razor-sharp jaw from side, no pooling under chin
   - 30: Good drainage, defined jaw in side profiles, minimal pooling
   - 50: Moderate congestion, soft jaw from sides, noticeable pooling under chin
   - 70: Poor drainage, blurred jaw from side angles, significant pooling from up angle
   - 85: Severe congestion, minimal jaw definition in profiles, heavy pooling under chin

4. FACIAL FAT LAYER % (0-100, lower is better):
   Use CENTER and SIDE PROFILES.
   Look at cheek fullness, face shape and bone structure visibility.
   SCORING ANCHORS:
   - 12: Extremely lean, bones highly visible from center and sides, angular face
   - 25: Very lean, bones clearly visible in profiles, defined structure
   - 40: Normal, bones partially visible, balanced fullness
   - 60: Full cheeks in center, bones minimally visible from sides, rounded shape
   - 80: Very full, bones not visible in profiles, round face

5. DEFINITION SCORE (0-100, higher is better):
   Use ALL ANGLES.
   Look at structure clarity, cheekbone prominence, jaw sharpness and neck definition.
   SCORING ANCHORS:
   - 80: Exceptional definition from all angles, razor-sharp jaw, prominent cheekbones
   - 65: Excellent definition, sharp jaw in side profiles, clearly visible cheekbones
   - 50: Good definition, defined jaw from sides, moderate cheekbone visibility
   - 35: Moderate definition, soft jaw in profiles, subtle cheekbones
   - 20: Poor definition, blurred jaw from all angles, no visible bone structure

METRIC RELATIONSHIPS (these should correlate logically):
- water_retention and inflammation_index typically move together (within 5-10 points)
- lymph_congestion_score correlates with water_retention (within 8-15 points)
- definition_score is the INVERSE of water_retention/inflammation (when water is high, definition is low)
- facial_fat_layer is independent but often correlates with definition"""


def build_metric_prompt(image_count: int, pose_labels: Sequence[str]) -> str:
    """
    Single prompt template for multi-frame metric extraction

    Args:
        image_count: Number of images attached to the request
        pose_labels: Capture pose of each image, in order

    Returns:
        Prompt text
    """
    labels = list(pose_labels)[:image_count]
    while len(labels) < image_count:
        labels.append(pose_protocol.pose_label(len(labels)))

    descriptions = "\n".join(f"Image {i + 1}: {label}" for i, label in enumerate(labels))

    return f"""You are a facial biometric analyst. You have been provided with {image_count} image(s) showing the face from different angles:
{descriptions}

CRITICAL INSTRUCTIONS:
1. You must analyze ALL provided images to assess each metric accurately
2. Different metrics require different angles for accurate assessment
3. You must assign DIFFERENT values to each metric - they measure distinct aspects
4. Use the most relevant angle(s) for each specific metric

Return ONLY a valid JSON object with these exact keys:
{{
  "water_retention": <number 0-100>,
  "inflammation_index": <number 0-100>,
  "lymph_congestion_score": <number 0-100>,
  "facial_fat_layer": <number 0-100>,
  "definition_score": <number 0-100>,
  "potential_ceiling": 0
}}

potential_ceiling must ALWAYS be 0. Do not estimate it.

{METRIC_RUBRIC}

ANALYSIS PROCESS:
1. Review ALL images to understand the face from multiple angles
2. Assign base scores using the anchors above
3. Refine each metric using the angle(s) most relevant to it
4. Ensure the relationships between metrics are logical
5. Final check: the five scored metrics must have a spread of at least {config.METRIC_SPREAD_MIN} points between min and max

Return ONLY the JSON object. Ensure values are distinct and logically consistent."""


def default_metrics() -> Dict[str, float]:
    return dict(config.DEFAULT_METRICS)


# ============================================================================
# CLIENT
# ============================================================================

class OracleUnavailable(Exception):
    """Raised internally when no credentialed client can be built."""


class OracleClient:
    """
    Handle on the vision oracle.

    Built once at process start and passed to whoever needs it. The Groq
    client is created on first use and reused for every later call; calls are
    blocking, callers on an event loop should run them in a worker thread.
    """

    def __init__(self, api_key: Optional[str] = None, vision_model: Optional[str] = None,
                 text_model: Optional[str] = None, timeout: Optional[float] = None,
                 enabled: Optional[bool] = None, client: Any = None):
        self.api_key = config.GROQ_API_KEY if api_key is None else api_key
        self.vision_model = vision_model or config.ORACLE_VISION_MODEL
        self.text_model = text_model or config.GROQ_MODEL
        self.timeout = config.ORACLE_TIMEOUT_SECONDS if timeout is None else timeout
        self.enabled = config.ENABLE_AI if enabled is None else enabled
        self._client = client

    @property
    def available(self) -> bool:
        return self.enabled and (self._client is not None or bool(self.api_key))

    def _get_client(self):
        if not self.enabled:
            raise OracleUnavailable("AI disabled (ENABLE_AI=false)")
        if self._client is None:
            if not self.api_key:
                raise OracleUnavailable("AI service unavailable (GROQ_API_KEY not set)")
            self._client = Groq(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def _complete(self, model: str, messages: List[Dict[str, Any]], **kwargs) -> OracleContent:
        """One chat completion; transport problems propagate to the caller"""
        client = self._get_client()
        response = client.chat.completions.create(model=model, messages=messages, **kwargs)
        return message_content(response)

    def check_pose(self, frame: Union[bytes, str], required_pose: str = "center") -> PoseCheckResult:
        """
        Ask the oracle whether a frame shows the required pose

        Never raises. Missing credentials and transport errors come back with
        transport_error=True; an answer that cannot be read is a plain rejection.

        Args:
            frame: Image bytes or base64 text
            required_pose: center | left | right | up | down

        Returns:
            PoseCheckResult
        """
        pose = required_pose.lower() if pose_protocol.is_valid_pose(required_pose) else "center"
        base64_data = encode_frame(frame)
        if not base64_data:
            return PoseCheckResult.rejected("Image required")

        messages = [{
            "role": "user",
            "content": [
                {"type": "text", "text": build_pose_check_prompt(pose)},
                image_block(base64_data),
            ],
        }]

        try:
            content = self._complete(
                self.vision_model,
                messages,
                max_tokens=100,
                temperature=0.1,
                response_format={"type": "json_object"},
            )
        except OracleUnavailable as e:
            logger.log_warning("Pose Check Skipped", {"pose": pose, "reason": str(e)})
            return PoseCheckResult.rejected(str(e), transport_error=True)
        except Exception as e:
            logger.log_error("Pose Check Failed", e, {"pose": pose})
            return PoseCheckResult.rejected("Error checking face", transport_error=True)

        text = content_text(content)
        if text is None:
            reason = content.reason if isinstance(content, NoContent) else "No response from AI"
            logger.log_warning("Pose Check Empty", {"pose": pose, "reason": reason})
            return PoseCheckResult.rejected(reason)

        result = as_json_object(extract_json(text))
        if result is None:
            logger.log_warning("Pose Check Unparsable", {"pose": pose, "content": text[:200]})
            return PoseCheckResult.rejected("Failed to parse response")

        correct = result.get("correctPosition") is True
        message = result.get("message")
        if not isinstance(message, str) or not message:
            message = (
                f"User is in correct {pose} position" if correct
                else f"User is not in correct {pose} position"
            )

        logger.log_oracle("Pose Checked", {"pose": pose, "correct": correct, "message": message})

        if correct:
            return PoseCheckResult.accepted(message)
        return PoseCheckResult.rejected(message)

    def extract_metrics(self, frames: Sequence[Union[bytes, str]],
                        pose_labels: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """
        Ask the oracle to score an ordered set of frames

        The returned mapping is untrusted; run it through the metric validator.
        Any failure yields the default metric set instead of an error.

        Args:
            frames: 1-6 images (bytes or base64), capture order
            pose_labels: Pose description of each frame, same order

        Returns:
            Raw metric mapping
        """
        if not frames:
            logger.log_warning("No Images Provided", {"action": "using default metrics"})
            return default_metrics()

        encoded = [encode_frame(frame) for frame in frames]
        for index, data in enumerate(encoded):
            if not data or len(data) < config.MIN_IMAGE_BASE64_LENGTH:
                logger.log_warning("Invalid Image Data", {
                    "index": index,
                    "length": len(data) if data else 0,
                    "action": "using default metrics"
                })
                return default_metrics()

        labels = list(pose_labels) if pose_labels is not None else pose_protocol.pose_labels(len(encoded))
        prompt = build_metric_prompt(len(encoded), labels)

        messages = [
            {"role": "system", "content": METRIC_SYSTEM_PROMPT},
            {"role": "user", "content": [{"type": "text", "text": prompt}] + [image_block(d) for d in encoded]},
        ]

        logger.log_oracle("Metrics Requested", {
            "model": self.vision_model,
            "images": len(encoded),
            "labels": ", ".join(labels[:len(encoded)])
        })

        try:
            content = self._complete(
                self.vision_model,
                messages,
                max_tokens=500,
                temperature=0.3,
                response_format={"type": "json_object"},
            )
        except OracleUnavailable as e:
            logger.log_warning("Metric Extraction Skipped", {"reason": str(e), "action": "using default metrics"})
            return default_metrics()
        except Exception as e:
            logger.log_error("Metric Extraction Failed", e, {"action": "using default metrics"})
            return default_metrics()

        text = content_text(content)
        if text is None:
            logger.log_warning("No Metric Content", {"action": "using default metrics"})
            return default_metrics()

        metrics = as_json_object(extract_json(text))
        if metrics is None:
            logger.log_warning("Metric Response Unparsable", {"content": text[:200], "action": "using default metrics"})
            return default_metrics()

        logger.log_oracle("Metrics Received", {"keys": ", ".join(sorted(metrics.keys()))})
        return metrics

    def complete_json(self, system_prompt: str, prompt: str, temperature: float = 0.7,
                      max_tokens: int = 800) -> Optional[Dict[str, Any]]:
        """
        Text-only JSON completion on the text model

        Returns:
            Parsed JSON object or None if unavailable / failed
        """
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]

        try:
            content = self._complete(
                self.text_model,
                messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except OracleUnavailable as e:
            logger.log_warning("AI Completion Skipped", {"reason": str(e)})
            return None
        except Exception as e:
            logger.log_error("AI Completion Failed", e, {"model": self.text_model})
            return None

        parsed = as_json_object(extract_json(content_text(content)))
        if parsed is None:
            logger.log_warning("No JSON in AI Response", {"model": self.text_model})
        return parsed
