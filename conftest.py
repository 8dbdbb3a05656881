# Test environment: in-memory database, no AI credentials, fixed JWT secret
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["GROQ_API_KEY"] = ""
os.environ["JWT_SECRET_KEY"] = "test-secret-key-with-at-least-32-bytes"
os.environ["LOG_LEVEL"] = "WARNING"
