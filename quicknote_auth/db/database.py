from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
import os
from dotenv import load_dotenv

load_dotenv()

from quicknote_auth.core.config import DATABASE_URL

# Check if we should echo the SQL queries - never in production
def should_echo_sql():
    if os.getenv("ENVIRONMENT") == "production":
        return False
    return os.getenv("SQL_DEBUG", "false").lower() == "true"

echo = should_echo_sql()

# Database configuration
def get_database_engine(url: str = DATABASE_URL):
    if url.startswith("sqlite"):
        # SQLite specific configuration
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=echo
        )
    else:
        # PostgreSQL/MySQL configuration
        return create_engine(
            url,
            pool_pre_ping=True,
            pool_recycle=300,
            echo=echo
        )

engine = get_database_engine()

# Session factory for the durable key-value store
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

