from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings

Base = declarative_base()
ClientBase = declarative_base()


# Server Models
class ActivationKey(Base):
    __tablename__ = "keys"

    key_text = Column(String(255), primary_key=True)
    type = Column(String(32), nullable=False)

    # Binding, all three set together at first activation (epoch ms)
    device_id = Column(String(255), nullable=True)
    activated_at = Column(BigInteger, nullable=True)
    expires_at = Column(BigInteger, nullable=True, index=True)

    __table_args__ = (
        CheckConstraint(
            "(device_id IS NULL AND activated_at IS NULL AND expires_at IS NULL) OR "
            "(device_id IS NOT NULL AND activated_at IS NOT NULL AND expires_at IS NOT NULL)",
            name="ck_keys_binding_complete",
        ),
    )


# Client Models
class SystemConfig(ClientBase):
    __tablename__ = "system_config"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class VerificationAttempt(ClientBase):
    __tablename__ = "verification_attempts"

    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(String(255))

    # valid, invalid, invalid_device, expired, error, offline, protocol_error
    result = Column(String(20), nullable=False)
    error_message = Column(Text)

    device_id = Column(String(255))
    attempted_at = Column(DateTime, default=datetime.utcnow, index=True)


def _connect_args(database_url: str, timeout_seconds: float) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if database_url.startswith("postgresql"):
        return {
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
        }
    return {}


def normalize_database_url(url: str) -> str:
    # SQLAlchemy expects postgresql:// not postgres://
    url = url.strip()
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def create_session_factory(database_url: str, metadata_base=Base,
                           timeout_seconds: float = None) -> sessionmaker:
    """
    Build an engine for the given URL, create the tables of `metadata_base`
    and return a session factory bound to it.
    """
    if timeout_seconds is None:
        timeout_seconds = settings.STORAGE_TIMEOUT_SECONDS
    database_url = normalize_database_url(database_url)

    engine_kwargs = {"connect_args": _connect_args(database_url, timeout_seconds)}
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_timeout"] = timeout_seconds
        engine_kwargs["pool_pre_ping"] = True

    engine = create_engine(database_url, **engine_kwargs)
    metadata_base.metadata.create_all(bind=engine)
    return sessionmaker(autoflush=False, bind=engine)
