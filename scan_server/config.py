# Configuration Module - Procedural approach with module-level variables
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Database Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///face_scan.db")

# Groq API Configuration
GROQ_API_KEY = os.getenv("GROQ_API_KEY")  # Required for AI features: Set in .env file
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")  # Text model (prescriptions, insights)
ORACLE_VISION_MODEL = os.getenv("ORACLE_VISION_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct")
ORACLE_TIMEOUT_SECONDS = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "60"))
ENABLE_AI = os.getenv("ENABLE_AI", "true").lower() == "true"

# JWT Configuration
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")  # Override in .env for any real deployment
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "168"))

# Logging Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Capture Protocol Configuration
POSE_MAX_RETRIES = 3
POSITIONING_SETTLE_SECONDS = 1.0  # Before the very first capture
CAPTURE_RETRY_DELAY_SECONDS = 1.5  # After a failed capture
POSE_RETRY_DELAY_SECONDS = 1.0  # After the user chooses "retry"
POSE_TRANSITION_PAUSE_SECONDS = 1.5  # After an accepted pose, before the next one
FRAME_WAIT_TIMEOUT_SECONDS = float(os.getenv("FRAME_WAIT_TIMEOUT_SECONDS", "30"))
PROMPT_WAIT_TIMEOUT_SECONDS = float(os.getenv("PROMPT_WAIT_TIMEOUT_SECONDS", "120"))
MIN_FRAME_BYTES = 75  # ~100 base64 characters
MIN_IMAGE_BASE64_LENGTH = 100
MAX_SCAN_IMAGES = 6

# Metric Contract
SCORED_METRICS = [
    "water_retention",
    "inflammation_index",
    "lymph_congestion_score",
    "facial_fat_layer",
    "definition_score",
]
CEILING_METRIC = "potential_ceiling"
ALL_METRICS = SCORED_METRICS + [CEILING_METRIC]

DEFAULT_METRICS = {
    "water_retention": 25.0,
    "inflammation_index": 25.0,
    "lymph_congestion_score": 25.0,
    "facial_fat_layer": 25.0,
    "definition_score": 50.0,
    "potential_ceiling": 0.0,
}

METRIC_MIN = 0.0
METRIC_MAX = 100.0
METRIC_DECIMALS = 2
METRIC_SPREAD_MIN = 10  # Minimum max-min across the five scored metrics

# Trend Detection Threshold
TREND_THRESHOLD = 5  # points of change between two scans

# Metrics where a higher score is the better outcome
HIGHER_IS_BETTER = {"definition_score"}

# Metric Rules for Fallback Workouts
METRIC_RULES = {
    "water_retention": {
        "label": "Water Retention",
        "workout": {
            "name": "Morning Lymph Flush",
            "type": "lymph_drainage",
            "duration": 5,
            "instructions": "Light strokes from the center of the face outward, then down the sides of the neck. 10 passes per side.",
        },
    },
    "inflammation_index": {
        "label": "Inflammation",
        "workout": {
            "name": "Cold Compress Inflammation Flush",
            "type": "inflammation_flush",
            "duration": 3,
            "instructions": "Hold a cold compress on cheeks and under-eyes for 30 seconds each, repeat twice.",
        },
    },
    "lymph_congestion_score": {
        "label": "Lymph Congestion",
        "workout": {
            "name": "Neck and Jaw Drainage",
            "type": "lymph_drainage",
            "duration": 5,
            "instructions": "Pump above the collarbones 10 times, then sweep along the jawline toward the ears and down the neck.",
        },
    },
    "facial_fat_layer": {
        "label": "Facial Fat Layer",
        "workout": {
            "name": "Chin Tuck Posture Set",
            "type": "neck_posture",
            "duration": 4,
            "instructions": "3 sets of 12 slow chin tucks with a 2 second hold, shoulders relaxed.",
        },
    },
    "definition_score": {
        "label": "Definition",
        "workout": {
            "name": "Jaw Release and Activation",
            "type": "jaw_release",
            "duration": 4,
            "instructions": "Massage the masseter in small circles for 60 seconds, then 15 controlled jaw openings.",
        },
    },
}

DEFAULT_PRESCRIPTIONS = {
    "potassium_target": 3500,
    "sodium_limit": 2000,
    "water_timing": "Drink 16oz upon waking, 8oz every 2 hours, stop 2 hours before bed",
    "magnesium_bedtime_dose": 400,
    "carb_type_recommendation": "Focus on low-glycemic carbs like sweet potato, quinoa",
    "step_count_goal": 10000,
    "recommendations": "Maintain consistent hydration and reduce sodium intake",
}
