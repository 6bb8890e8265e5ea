import logging
from typing import Optional, Sequence

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import StaticPool

from clinic_monitor.config import settings

logger = logging.getLogger(__name__)


REQUIRED_TABLES = ("patients", "n8n_chat_histories", "conversation_logs")


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {}
    # Log reads run in worker threads
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_kwargs(settings.DATABASE_URL),
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating any missing tables.
    Called during application startup; existing tables are left untouched.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from clinic_monitor import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and the monitored tables exist.

    Returns:
        True if DB is healthy and all tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema incomplete, missing tables: {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Generation Log (n8n_chat_histories)
# =============================================================================

def get_chat_history_rows(db: Session, session_ids: Optional[Sequence[str]] = None) -> list:
    """
    Read generation-log rows, optionally only those stored under `session_ids`.

    Rows come back in insertion order; callers must not rely on it.
    """
    from clinic_monitor.models import ChatHistory

    query = db.query(ChatHistory)
    if session_ids is not None:
        query = query.filter(ChatHistory.session_id.in_(list(session_ids)))
    rows = query.order_by(ChatHistory.id.asc()).all()
    logger.debug(f"Read {len(rows)} chat history rows (sessions={session_ids})")
    return rows


def list_chat_history_sessions(db: Session) -> list[str]:
    from clinic_monitor.models import ChatHistory

    rows = db.query(ChatHistory.session_id).distinct().all()
    return [row.session_id for row in rows if row.session_id]


# =============================================================================
# Outgoing Log (conversation_logs)
# =============================================================================

def get_conversation_log_rows(db: Session, whatsapp_numbers: Sequence[str]) -> list:
    from clinic_monitor.models import ConversationLog

    rows = (
        db.query(ConversationLog)
        .filter(ConversationLog.whatsapp_number.in_(list(whatsapp_numbers)))
        .order_by(ConversationLog.created_at.asc(), ConversationLog.id.asc())
        .all()
    )
    logger.debug(f"Read {len(rows)} conversation log rows for {whatsapp_numbers}")
    return rows


def get_all_conversation_log_rows(db: Session) -> list:
    from clinic_monitor.models import ConversationLog

    return (
        db.query(ConversationLog)
        .order_by(ConversationLog.created_at.asc(), ConversationLog.id.asc())
        .all()
    )


def list_conversation_log_numbers(db: Session) -> list[str]:
    from clinic_monitor.models import ConversationLog

    rows = db.query(ConversationLog.whatsapp_number).distinct().all()
    return [row.whatsapp_number for row in rows if row.whatsapp_number]


# =============================================================================
# Patients
# =============================================================================

def get_patients(db: Session) -> list:
    from clinic_monitor.models import Patient

    return db.query(Patient).order_by(Patient.created_at.asc(), Patient.id.asc()).all()
