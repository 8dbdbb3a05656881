# Main FastAPI Application - Face Scan Server
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from scan_server import config
from scan_server import database
from scan_server import logger
from scan_server import auth
from scan_server import capture_sessions
from scan_server import pose_protocol
from scan_server import prescription_engine
from scan_server import scan_store
from scan_server.metric_validator import validate_metrics
from scan_server.oracle_client import OracleClient


# ============================================================================
# STARTUP/SHUTDOWN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and the oracle handle; stop capture tasks on shutdown"""
    logger.log_lifecycle("STARTUP", "Initializing Face Scan Server")

    db_ok = database.test_connection()
    init_ok = database.init_database()

    app.state.oracle = OracleClient()

    if app.state.oracle.available:
        logger.log_oracle("Groq AI Enabled", {
            "vision_model": app.state.oracle.vision_model,
            "text_model": app.state.oracle.text_model
        })
    else:
        logger.log_warning("Groq AI Unavailable", {
            "ENABLE_AI": str(config.ENABLE_AI).lower(),
            "effect": "pose checks pass through, metrics use defaults"
        })

    if db_ok and init_ok:
        logger.log_success("Server Ready", {"database": "Connected"})
    else:
        logger.log_error("Startup Failed", Exception("Database initialization issue"))

    yield

    logger.log_lifecycle("SHUTDOWN", "Stopping capture sessions")
    await capture_sessions.stop_all_captures()


# Initialize FastAPI
app = FastAPI(
    title="Face Scan API",
    description="Multi-angle face capture, pose validation and facial metric history",
    version="1.0.0",
    lifespan=lifespan
)

# Security scheme for Swagger UI
security = HTTPBearer()


# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class RegisterRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class FaceCheckRequest(BaseModel):
    image: str = ""
    requiredPose: Optional[str] = "center"


class CreateScanRequest(BaseModel):
    images: List[str] = []
    poses: Optional[List[str]] = None


class CaptureFrameRequest(BaseModel):
    image: str


class CapturePromptRequest(BaseModel):
    choice: str


# ============================================================================
# DEPENDENCY INJECTION
# ============================================================================

def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> int:
    """
    Extract user_id from JWT token in Authorization header

    Raises HTTPException if token is missing or invalid
    """
    user_id = auth.extract_user_id(credentials.credentials)

    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return user_id


def get_oracle(request: Request) -> OracleClient:
    return request.app.state.oracle


# ============================================================================
# HEALTH CHECK
# ============================================================================

@app.get("/api/health")
async def health_check(oracle: OracleClient = Depends(get_oracle)):
    db_ok = database.test_connection()

    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "groq_ai": "enabled" if oracle.available else "disabled",
        "timestamp": datetime.utcnow().isoformat()
    }


# ============================================================================
# AUTHENTICATION ROUTES
# ============================================================================

@app.post("/api/auth/register")
async def register(request: RegisterRequest):
    logger.log_api("POST /api/auth/register", {"email": request.email})

    if not request.email.strip() or not request.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    success, message, user_id = auth.register_user(email=request.email, password=request.password)

    if not success:
        raise HTTPException(status_code=400, detail=message)

    return {
        "success": True,
        "message": message,
        "user_id": user_id,
        "token": auth.create_jwt_token(user_id, request.email.strip().lower())
    }


@app.post("/api/auth/login")
async def login(request: LoginRequest):
    logger.log_api("POST /api/auth/login", {"email": request.email})

    success, message, token, user_data = auth.login_user(email=request.email, password=request.password)

    if not success:
        raise HTTPException(status_code=401, detail=message)

    return {
        "success": True,
        "message": message,
        "token": token,
        "user": user_data
    }


@app.get("/api/auth/profile", dependencies=[Depends(security)])
async def get_profile(user_id: int = Depends(get_current_user)):
    logger.log_api("GET /api/auth/profile", {"user_id": user_id})

    profile = auth.get_user_profile(user_id)

    if not profile:
        raise HTTPException(status_code=404, detail="User not found")

    return profile


# ============================================================================
# FACE CHECK ROUTES
# ============================================================================

@app.post("/api/face-check/check", dependencies=[Depends(security)])
async def check_face(
    request: FaceCheckRequest,
    user_id: int = Depends(get_current_user),
    oracle: OracleClient = Depends(get_oracle)
):
    """
    Check a single frame against a required pose

    Oracle outages come back as 200 with transportError=true so clients can
    carry on with the capture.
    """
    pose = request.requiredPose or "center"
    logger.log_api("POST /api/face-check/check", {"user_id": user_id, "pose": pose})

    if not request.image:
        raise HTTPException(status_code=400, detail="Image data required")

    result = await asyncio.to_thread(oracle.check_pose, request.image, pose)
    return result.to_dict()


# ============================================================================
# SCAN ROUTES
# ============================================================================

@app.post("/api/scans", dependencies=[Depends(security)])
async def create_scan(
    request: CreateScanRequest,
    user_id: int = Depends(get_current_user),
    oracle: OracleClient = Depends(get_oracle)
):
    """
    Analyze an uploaded multi-angle capture and store it

    images are base64 frames in capture order (center first). poses, when
    given, name the pose of each image; otherwise the standard sequence is assumed.
    """
    images = request.images
    logger.log_api("POST /api/scans", {"user_id": user_id, "images": len(images)})

    if not images:
        raise HTTPException(status_code=400, detail="At least one image is required")

    if len(images) > config.MAX_SCAN_IMAGES:
        raise HTTPException(status_code=400, detail=f"At most {config.MAX_SCAN_IMAGES} images are allowed")

    for index, image in enumerate(images):
        if not isinstance(image, str) or len(image) < config.MIN_IMAGE_BASE64_LENGTH:
            raise HTTPException(status_code=400, detail=f"Invalid image data at index {index}")

    if request.poses:
        labels = [pose_protocol.label_for_pose(pose) for pose in request.poses[:len(images)]]
    else:
        labels = pose_protocol.pose_labels(len(images))

    raw = await asyncio.to_thread(oracle.extract_metrics, images, labels)
    metrics = validate_metrics(raw)

    try:
        record = await asyncio.to_thread(scan_store.save_scan, user_id, images[0], len(images), metrics)
    except scan_store.ScanPersistenceError as e:
        logger.log_error("Scan Upload Failed", e, {"user_id": user_id})
        raise HTTPException(status_code=500, detail="Failed to save scan")

    record["warnings"] = list(metrics.warnings)
    return record


@app.get("/api/scans", dependencies=[Depends(security)])
async def list_scans(user_id: int = Depends(get_current_user)):
    logger.log_api("GET /api/scans", {"user_id": user_id})

    try:
        return scan_store.list_scans(user_id)
    except Exception as e:
        logger.log_error("Scan List Failed", e, {"user_id": user_id})
        raise HTTPException(status_code=500, detail="Failed to fetch scans")


@app.get("/api/scans/analytics/trends", dependencies=[Depends(security)])
async def scan_trends(user_id: int = Depends(get_current_user)):
    logger.log_api("GET /api/scans/analytics/trends", {"user_id": user_id})

    try:
        return scan_store.get_trends(user_id)
    except Exception as e:
        logger.log_error("Trend Fetch Failed", e, {"user_id": user_id})
        raise HTTPException(status_code=500, detail="Failed to fetch trends")


@app.get("/api/scans/{scan_id}", dependencies=[Depends(security)])
async def get_scan(scan_id: int, user_id: int = Depends(get_current_user)):
    logger.log_api("GET /api/scans/{id}", {"user_id": user_id, "scan_id": scan_id})

    try:
        scan = scan_store.get_scan(user_id, scan_id)
    except Exception as e:
        logger.log_error("Scan Fetch Failed", e, {"user_id": user_id, "scan_id": scan_id})
        raise HTTPException(status_code=500, detail="Failed to fetch scan")

    if not scan:
        raise HTTPException(status_code=404, detail="Scan not found")

    return scan


# ============================================================================
# SERVER-DRIVEN CAPTURE ROUTES
# ============================================================================

@app.post("/api/capture/start", dependencies=[Depends(security)])
async def start_capture(
    user_id: int = Depends(get_current_user),
    oracle: OracleClient = Depends(get_oracle)
):
    """
    Start the six-pose capture protocol for this user

    The client then polls GET /api/capture/status and posts a frame whenever
    awaiting_frame is true, and answers prompts with POST /api/capture/prompt.
    """
    logger.log_api("POST /api/capture/start", {"user_id": user_id})

    success, message, status = capture_sessions.start_capture(user_id, oracle)

    if not success:
        raise HTTPException(status_code=409, detail=message)

    return {"success": True, "message": message, "capture": status}


@app.post("/api/capture/frame", dependencies=[Depends(security)])
async def submit_capture_frame(request: CaptureFrameRequest, user_id: int = Depends(get_current_user)):
    success, message, status = capture_sessions.submit_frame(user_id, request.image)

    if status is None:
        raise HTTPException(status_code=404, detail=message)
    if not success:
        raise HTTPException(status_code=409, detail=message)

    return {"success": True, "message": message, "capture": status}


@app.post("/api/capture/prompt", dependencies=[Depends(security)])
async def answer_capture_prompt(request: CapturePromptRequest, user_id: int = Depends(get_current_user)):
    logger.log_api("POST /api/capture/prompt", {"user_id": user_id, "choice": request.choice})

    success, message, status = capture_sessions.resolve_prompt(user_id, request.choice)

    if status is None:
        raise HTTPException(status_code=404, detail=message)
    if not success:
        raise HTTPException(status_code=409, detail=message)

    return {"success": True, "message": message, "capture": status}


@app.post("/api/capture/cancel", dependencies=[Depends(security)])
async def cancel_capture(user_id: int = Depends(get_current_user)):
    logger.log_api("POST /api/capture/cancel", {"user_id": user_id})

    success, message, status = capture_sessions.cancel_capture(user_id)

    if status is None:
        raise HTTPException(status_code=404, detail=message)
    if not success:
        raise HTTPException(status_code=409, detail=message)

    return {"success": True, "message": message, "capture": status}


@app.get("/api/capture/status", dependencies=[Depends(security)])
async def capture_status(user_id: int = Depends(get_current_user)):
    status = capture_sessions.get_status(user_id)

    if status is None:
        raise HTTPException(status_code=404, detail="No capture session")

    return status


# ============================================================================
# PRESCRIPTION ROUTES
# ============================================================================

@app.get("/api/prescriptions/latest", dependencies=[Depends(security)])
async def latest_prescriptions(
    user_id: int = Depends(get_current_user),
    oracle: OracleClient = Depends(get_oracle)
):
    logger.log_api("GET /api/prescriptions/latest", {"user_id": user_id})

    try:
        scan = scan_store.get_latest_scan(user_id)
        if not scan:
            raise HTTPException(status_code=404, detail="No scans found. Please complete a scan first.")

        return await asyncio.to_thread(prescription_engine.build_daily_plan, oracle, scan)

    except HTTPException:
        raise
    except Exception as e:
        logger.log_error("Prescription Generation Failed", e, {"user_id": user_id})
        raise HTTPException(status_code=500, detail="Failed to generate prescriptions")


@app.get("/api/prescriptions/insights", dependencies=[Depends(security)])
async def scan_insights(
    user_id: int = Depends(get_current_user),
    oracle: OracleClient = Depends(get_oracle)
):
    logger.log_api("GET /api/prescriptions/insights", {"user_id": user_id})

    try:
        scans = scan_store.get_recent_scans(user_id, limit=5)
        return await asyncio.to_thread(prescription_engine.generate_insights, oracle, scans)
    except Exception as e:
        logger.log_error("Insight Generation Failed", e, {"user_id": user_id})
        raise HTTPException(status_code=500, detail="Failed to generate insights")


# ============================================================================
# ROOT ENDPOINT
# ============================================================================

@app.get("/")
async def root():
    """API information"""
    return {
        "name": "Face Scan API",
        "version": "1.0.0",
        "endpoints": {
            "auth": ["/api/auth/register", "/api/auth/login", "/api/auth/profile"],
            "face_check": ["/api/face-check/check"],
            "scans": ["/api/scans", "/api/scans/{id}", "/api/scans/analytics/trends"],
            "capture": ["/api/capture/start", "/api/capture/frame", "/api/capture/prompt",
                        "/api/capture/cancel", "/api/capture/status"],
            "prescriptions": ["/api/prescriptions/latest", "/api/prescriptions/insights"],
            "health": ["/api/health"]
        },
        "documentation": "/docs"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
