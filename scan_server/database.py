# Database Module - SQLAlchemy Core (Procedural, No ORM Classes)
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, Float, DateTime, Text, ForeignKey, Index
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from scan_server import config
from scan_server import logger


def build_engine(database_url: str):
    """
    Create the SQLAlchemy engine for a database URL

    postgresql:// is rewritten to postgresql+psycopg:// for psycopg3.
    In-memory SQLite shares one connection so every caller sees the same tables.
    """
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)

    return create_engine(database_url, echo=False, pool_pre_ping=True)


engine = build_engine(config.DATABASE_URL)
metadata = MetaData()

# Table Definitions

# Users Table
users_table = Table(
    'users',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('email', String(255), unique=True, nullable=False, index=True),
    Column('password_hash', String(255), nullable=False),
    Column('created_at', DateTime, server_default=func.now()),
)

# Scans Table (one row per completed multi-angle scan)
scans_table = Table(
    'scans',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id'), nullable=False),
    Column('scan_date', DateTime, nullable=False, server_default=func.now()),
    Column('center_image', Text, nullable=True),  # base64 of the first (center) frame
    Column('frame_count', Integer, nullable=False, default=0),
    Column('water_retention', Float, nullable=False),
    Column('inflammation_index', Float, nullable=False),
    Column('lymph_congestion_score', Float, nullable=False),
    Column('facial_fat_layer', Float, nullable=False),
    Column('definition_score', Float, nullable=False),
    Column('potential_ceiling', Float, nullable=False, default=0),
    Index('idx_scans_user_date', 'user_id', 'scan_date'),
)


# Database Initialization Functions

def init_database():
    """Create all tables if they don't exist"""
    try:
        metadata.create_all(engine)
        logger.log_db("Tables Ready", {"tables": ", ".join(metadata.tables.keys())})
        return True
    except Exception as e:
        logger.log_error("Database Initialization Failed", e)
        return False


def test_connection():
    """Test database connectivity"""
    try:
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
            return True
    except Exception as e:
        logger.log_error("Database Connection Failed", e)
        return False


def drop_all_tables():
    """Drop all tables managed by this metadata (use with caution!)"""
    try:
        metadata.drop_all(engine, checkfirst=True)
        logger.log_warning("All Managed Tables Dropped", {"tables": ", ".join(metadata.tables.keys())})
        return True
    except Exception as e:
        logger.log_error("Drop Tables Failed", e)
        return False


def get_connection():
    """Get a database connection"""
    return engine.connect()
