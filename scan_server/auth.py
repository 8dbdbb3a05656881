# Authentication Module - JWT-based Auth (Procedural)
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Optional, Dict, Tuple

import jwt
from sqlalchemy import select, insert

from scan_server import config
from scan_server import logger
from scan_server.database import users_table, get_connection

PBKDF2_ITERATIONS = 200_000


def hash_password(password: str, salt: Optional[str] = None) -> str:
    """
    Hash password with salted PBKDF2-SHA256

    Returns:
        "pbkdf2_sha256$<iterations>$<salt>$<hex digest>"
    """
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest}"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password against a stored hash"""
    try:
        scheme, iterations, salt, digest = hashed_password.split("$")
    except (AttributeError, ValueError):
        return False
    if scheme != "pbkdf2_sha256":
        return False

    candidate = hashlib.pbkdf2_hmac("sha256", plain_password.encode(), salt.encode(), int(iterations)).hex()
    return hmac.compare_digest(candidate, digest)


def create_jwt_token(user_id: int, email: str) -> str:
    """
    Create JWT token for user

    Args:
        user_id: User's database ID
        email: User's email

    Returns:
        JWT token string
    """
    expiration = datetime.utcnow() + timedelta(hours=config.JWT_EXPIRATION_HOURS)

    payload = {
        "user_id": user_id,
        "email": email,
        "exp": expiration,
        "iat": datetime.utcnow()
    }

    token = jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)

    logger.log_auth("JWT Token Created", {
        "user_id": user_id,
        "email": email,
        "expires_at": expiration.isoformat()
    })

    return token


def decode_jwt_token(token: str) -> Optional[Dict]:
    """
    Decode and verify JWT token

    Returns:
        Decoded payload dict or None if invalid
    """
    try:
        return jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as e:
        logger.log_error("JWT Decode Failed", e, {"reason": "Token expired"})
        return None
    except jwt.InvalidTokenError as e:
        logger.log_error("JWT Decode Failed", e)
        return None


def extract_user_id(token: str) -> Optional[int]:
    payload = decode_jwt_token(token)
    if payload:
        return payload.get("user_id")
    return None


def register_user(email: str, password: str) -> Tuple[bool, str, Optional[int]]:
    """
    Register a new user

    Args:
        email: Login email (stored lowercased)
        password: Plain text password

    Returns:
        Tuple of (success: bool, message: str, user_id: Optional[int])
    """
    email = email.strip().lower()
    conn = None
    try:
        conn = get_connection()

        existing = conn.execute(select(users_table.c.id).where(users_table.c.email == email)).first()
        if existing:
            logger.log_warning("Registration Failed", {"email": email, "reason": "Email already registered"})
            return False, "User already exists", None

        result = conn.execute(insert(users_table).values(
            email=email,
            password_hash=hash_password(password)
        ))
        conn.commit()
        user_id = result.inserted_primary_key[0]

        logger.log_auth("User Registered", {"user_id": user_id, "email": email})
        return True, "User registered successfully", user_id

    except Exception as e:
        logger.log_error("Registration Failed", e, {"email": email})
        return False, f"Registration error: {str(e)}", None
    finally:
        if conn:
            conn.close()


def login_user(email: str, password: str) -> Tuple[bool, str, Optional[str], Optional[Dict]]:
    """
    Authenticate user and generate JWT token

    Returns:
        Tuple of (success: bool, message: str, token: Optional[str], user_data: Optional[Dict])
    """
    email = email.strip().lower()
    conn = None
    try:
        conn = get_connection()
        result = conn.execute(select(users_table).where(users_table.c.email == email)).first()

        if not result:
            logger.log_warning("Login Failed", {"email": email, "reason": "User not found"})
            return False, "Invalid credentials", None, None

        user_dict = dict(result._mapping)
        if not verify_password(password, user_dict['password_hash']):
            logger.log_warning("Login Failed", {"email": email, "reason": "Incorrect password"})
            return False, "Invalid credentials", None, None

        token = create_jwt_token(user_dict['id'], email)
        user_data = {"id": user_dict['id'], "email": user_dict['email']}

        logger.log_auth("Login Successful", {"user_id": user_dict['id'], "email": email})
        return True, "Login successful", token, user_data

    except Exception as e:
        logger.log_error("Login Failed", e, {"email": email})
        return False, f"Login error: {str(e)}", None, None
    finally:
        if conn:
            conn.close()


def get_user_profile(user_id: int) -> Optional[Dict]:
    """Fetch user profile by ID, None if not found"""
    conn = None
    try:
        conn = get_connection()
        result = conn.execute(select(users_table).where(users_table.c.id == user_id)).first()
        if not result:
            return None

        user_dict = dict(result._mapping)
        return {
            "id": user_dict['id'],
            "email": user_dict['email'],
            "created_at": user_dict['created_at'].isoformat() if user_dict['created_at'] else None
        }

    except Exception as e:
        logger.log_error("Profile Fetch Failed", e, {"user_id": user_id})
        return None
    finally:
        if conn:
            conn.close()


# Helper function to create default test user
def create_test_user():
    """Create a default test user for development"""
    success, message, user_id = register_user(email="demo@example.com", password="test123")

    if success:
        logger.log_success("Test User Created", {"email": "demo@example.com", "user_id": user_id})
    else:
        logger.log_warning("Test User Creation", {"message": message})

    return success, user_id
