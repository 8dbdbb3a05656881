"""
Capture Client Simulator

Drives the server-side six-pose capture over HTTP, standing in for the
camera app:
- Logs in (registers first if needed)
- Starts a capture and polls its status
- Posts the next image whenever the server waits for a frame
- Answers retake/skip prompts automatically

Usage:
    python -m scan_server.capture_client --images center.jpg left.jpg right.jpg up.jpg down.jpg center2.jpg
    python -m scan_server.capture_client --images face.jpg --on-reject skip
"""

import argparse
import base64
import sys
import time
from typing import Dict, List, Optional

import requests

# API Configuration
BASE_URL = "http://localhost:8000"
EMAIL = "demo@example.com"
PASSWORD = "test123"

POLL_INTERVAL_SECONDS = 0.5
TERMINAL_STATUSES = ("completed", "failed", "idle")


def load_images(paths: List[str]) -> List[str]:
    """Read image files as base64; a single file is reused for every pose"""
    images = []
    for path in paths:
        with open(path, "rb") as f:
            images.append(base64.b64encode(f.read()).decode("ascii"))
    return images


def login(base_url: str, email: str, password: str) -> str:
    """Authenticate (registering on first use) and return a JWT token"""
    print(f"\n🔐 Logging in as {email}...")
    response = requests.post(f"{base_url}/api/auth/login", json={"email": email, "password": password}, timeout=10)

    if response.status_code == 401:
        print("   No account yet, registering...")
        response = requests.post(f"{base_url}/api/auth/register", json={"email": email, "password": password}, timeout=10)

    if response.status_code != 200:
        print(f"❌ Login failed: {response.status_code}")
        print(f"    Response: {response.text[:200]}")
        sys.exit(1)

    token = response.json().get("token")
    if not token:
        print("❌ Login failed: Response missing token")
        sys.exit(1)

    print("✅ Login successful!")
    return token


def start_capture(base_url: str, headers: Dict) -> Dict:
    response = requests.post(f"{base_url}/api/capture/start", headers=headers, timeout=10)
    if response.status_code == 409:
        print("⚠️  A scan is already running, cancelling it first...")
        requests.post(f"{base_url}/api/capture/cancel", headers=headers, timeout=10)
        response = requests.post(f"{base_url}/api/capture/start", headers=headers, timeout=10)

    if response.status_code != 200:
        print(f"❌ Could not start capture: {response.status_code} {response.text[:200]}")
        sys.exit(1)

    print("📸 Capture started")
    return response.json()["capture"]


def run_capture(base_url: str, token: str, images: List[str], on_reject: str,
                timeout_seconds: float) -> Optional[Dict]:
    """
    Feed frames and prompt answers until the scan reaches a terminal state

    Returns:
        Final status snapshot, or None on timeout
    """
    headers = {"Authorization": f"Bearer {token}"}
    start_capture(base_url, headers)

    frames_sent = 0
    last_position = None
    deadline = time.time() + timeout_seconds

    while time.time() < deadline:
        status = requests.get(f"{base_url}/api/capture/status", headers=headers, timeout=10).json()

        if status["position"] != last_position:
            print(f"   ➡️  {status['position']} ({status['progress']}%) [{status['status']}]")
            last_position = status["position"]

        if status["status"] in TERMINAL_STATUSES and not status["busy"]:
            return status

        if status.get("prompt"):
            print(f"   ❓ {status['prompt']} -> {on_reject}")
            requests.post(f"{base_url}/api/capture/prompt", json={"choice": on_reject}, headers=headers, timeout=10)

        elif status.get("awaiting_frame"):
            image = images[min(status["pose_index"], len(images) - 1)]
            response = requests.post(f"{base_url}/api/capture/frame", json={"image": image}, headers=headers, timeout=10)
            if response.status_code == 200:
                frames_sent += 1

        time.sleep(POLL_INTERVAL_SECONDS)

    print(f"❌ Capture did not finish within {timeout_seconds:.0f}s ({frames_sent} frames sent)")
    requests.post(f"{base_url}/api/capture/cancel", headers=headers, timeout=10)
    return None


def print_outcome(status: Dict):
    outcome = status.get("outcome") or {}

    for notice in status.get("notices", []):
        print(f"   ⚠️  {notice}")

    if outcome.get("status") == "completed":
        print(f"\n✅ Scan #{outcome['scan_id']} saved from {outcome['frame_count']} frames")
        for name, value in (outcome.get("metrics") or {}).items():
            print(f"   {name:<24} {value}")
        for warning in outcome.get("warnings", []):
            print(f"   ⚠️  {warning}")
    else:
        print(f"\n❌ Scan {outcome.get('status', status['status'])}: {outcome.get('error')}")


def main():
    parser = argparse.ArgumentParser(description="Drive a server-side face capture from image files")
    parser.add_argument("--images", nargs="+", required=True, help="Image files in pose order (one file is reused)")
    parser.add_argument("--base-url", default=BASE_URL)
    parser.add_argument("--email", default=EMAIL)
    parser.add_argument("--password", default=PASSWORD)
    parser.add_argument("--on-reject", choices=["retry", "skip"], default="skip",
                        help="Answer to give when a pose is rejected")
    parser.add_argument("--timeout", type=float, default=300, help="Give up after this many seconds")
    args = parser.parse_args()

    images = load_images(args.images)
    token = login(args.base_url, args.email, args.password)

    status = run_capture(args.base_url, token, images, args.on_reject, args.timeout)
    if status is None:
        sys.exit(1)

    print_outcome(status)
    outcome = status.get("outcome") or {}
    sys.exit(0 if outcome.get("status") == "completed" else 1)


if __name__ == "__main__":
    main()
