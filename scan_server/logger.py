# Structured Logging Module - Procedural Approach
from datetime import datetime
from typing import Any, Dict, Optional

from scan_server import config


# ANSI Color Codes for Terminal
class Colors:
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    PURPLE = '\033[95m'
    CYAN = '\033[96m'
    WHITE = '\033[97m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


# Step Prefixes with Emojis
STEP_PREFIXES = {
    "AUTH": "🔐",
    "CAPTURE": "📸",
    "ORACLE": "🤖",
    "VALIDATOR": "📏",
    "DB": "💾",
    "API": "🌐",
    "SYSTEM": "🔧",
    "INFO": "🔹",
    "ERROR": "❌",
    "SUCCESS": "✅",
    "WARNING": "⚠️"
}

LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}

# Severity of each step category, checked against LOG_LEVEL
STEP_LEVELS = {
    "WARNING": "WARNING",
    "ERROR": "ERROR",
}

# Next Step Suggestions
NEXT_STEPS = {
    "AUTH:LOGIN": "Call POST /api/capture/start or POST /api/scans with the token",
    "AUTH:USER": "Call POST /api/auth/login to get a JWT token",
    "CAPTURE:SCAN": "Submit frames with POST /api/capture/frame",
    "CAPTURE:POSE": "Waiting for the next frame",
    "ORACLE:METRICS": "Validating metrics before saving",
    "DB:SCAN": "Fetch history via GET /api/scans or GET /api/scans/analytics/trends",
}


def get_timestamp() -> str:
    """Get formatted timestamp"""
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


def is_enabled(step: str) -> bool:
    """Check the step's severity against LOG_LEVEL"""
    threshold = LEVELS.get(str(config.LOG_LEVEL).upper(), LEVELS["INFO"])
    level = LEVELS[STEP_LEVELS.get(step, "INFO")]
    return level >= threshold


def log_step(step: str, action: str, data: Optional[Dict[str, Any]] = None, color: str = Colors.CYAN):
    """
    Log a step with structured format

    Args:
        step: Step category (AUTH, CAPTURE, ORACLE, VALIDATOR, DB, etc.)
        action: Description of the action
        data: Optional dictionary of data to display
        color: ANSI color code
    """
    if not is_enabled(step):
        return

    prefix = STEP_PREFIXES.get(step, "🔹")
    timestamp = get_timestamp()

    print(f"{color}{Colors.BOLD}[{timestamp}] {prefix} [{step}]{Colors.RESET} {action}")

    if data:
        for key, value in data.items():
            # Truncate long values (base64 frames end up here otherwise)
            if isinstance(value, str) and len(value) > 100:
                value = value[:97] + "..."
            print(f"   {Colors.WHITE}├─ {key}: {value}{Colors.RESET}")

    # Suggest next step
    words = action.split()
    next_step_key = f"{step}:{words[0].upper()}" if words else ""
    if next_step_key in NEXT_STEPS:
        print(f"   {Colors.YELLOW}└─ >>> Next: {NEXT_STEPS[next_step_key]}{Colors.RESET}")
    print()  # Blank line for readability


def log_auth(action: str, data: Optional[Dict[str, Any]] = None):
    """Log authentication events"""
    log_step("AUTH", action, data, Colors.PURPLE)


def log_capture(action: str, data: Optional[Dict[str, Any]] = None):
    """Log capture orchestrator events"""
    log_step("CAPTURE", action, data, Colors.BLUE)


def log_oracle(action: str, data: Optional[Dict[str, Any]] = None):
    """Log vision oracle events"""
    log_step("ORACLE", action, data, Colors.GREEN)


def log_validator(action: str, data: Optional[Dict[str, Any]] = None):
    """Log metric contract events"""
    log_step("VALIDATOR", action, data, Colors.CYAN)


def log_db(action: str, data: Optional[Dict[str, Any]] = None):
    """Log database events"""
    log_step("DB", action, data, Colors.WHITE)


def log_api(action: str, data: Optional[Dict[str, Any]] = None):
    """Log API events"""
    log_step("API", action, data, Colors.CYAN)


def log_info(action: str, data: Optional[Dict[str, Any]] = None):
    """Log informational events"""
    log_step("INFO", action, data, Colors.WHITE)


def log_error(action: str, error: Exception, data: Optional[Dict[str, Any]] = None):
    """Log errors with type and message"""
    error_data = dict(data or {})
    error_data["Error"] = str(error)
    error_data["Type"] = type(error).__name__
    log_step("ERROR", action, error_data, Colors.RED)


def log_success(action: str, data: Optional[Dict[str, Any]] = None):
    """Log success events"""
    log_step("SUCCESS", action, data, Colors.GREEN)


def log_warning(action: str, data: Optional[Dict[str, Any]] = None):
    """Log warnings"""
    log_step("WARNING", action, data, Colors.YELLOW)


def log_lifecycle(phase: str, details: str = ""):
    """
    Log major lifecycle events with clear visual separation

    Args:
        phase: Phase name (e.g., "STARTUP", "SCAN_START", "SHUTDOWN")
        details: Optional details
    """
    separator = "=" * 80
    print(f"\n{Colors.BOLD}{Colors.CYAN}{separator}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}>>> {phase} {details}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}{separator}{Colors.RESET}\n")
