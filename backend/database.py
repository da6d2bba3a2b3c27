"""
Database models and operations for the command server
Uses SQLite (via SQLAlchemy) for persistent storage of agents, commands and registration tokens
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy import create_engine, Column, String, Boolean, DateTime, ForeignKey, Text, Index, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
import os
import logging
import threading

logger = logging.getLogger(__name__)

_database_manager_instance: Optional['DatabaseManager'] = None
_database_manager_lock = threading.Lock()


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite stores datetimes as naive, so make them timezone-aware for comparison"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StorageError(Exception):
    """Raised when the backing store cannot complete an operation"""


Base = declarative_base()


class Agent(Base):
    """Registered remote agent"""
    __tablename__ = "agents"

    id = Column(String, primary_key=True)
    hostname = Column(String, nullable=False)
    ip = Column(String, nullable=True)  # Last-known address
    status = Column(String, nullable=False, default='registered')  # 'registered', 'connected', 'disconnected'
    registered_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, nullable=True)


class Command(Base):
    """Shell command submitted for one agent"""
    __tablename__ = "commands"

    id = Column(String, primary_key=True)
    agent_id = Column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    command = Column(Text, nullable=False)
    status = Column(String, nullable=False, default='pending')  # 'pending', 'executing', 'completed', 'failed'
    result = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    dispatched_at = Column(DateTime, nullable=True)  # When the command was handed to a live session
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_commands_agent_created', 'agent_id', 'created_at'),
        Index('idx_commands_status', 'status'),
    )


class RegistrationToken(Base):
    """Single-use token an agent exchanges for its identity and credential"""
    __tablename__ = "registration_tokens"

    token = Column(String, primary_key=True)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)
    used_by_agent_id = Column(String, nullable=True)


class DatabaseManager:
    """
    Database management and operations.

    Every operation opens a short-lived session. Any SQLAlchemy failure is
    re-raised as StorageError so callers can tell storage problems apart from
    "not found" results (which are returned as None or an empty list).
    """

    def __init__(self, database_url: str = "sqlite:///data/ccserver.db"):
        self.database_url = database_url

        if database_url.startswith("sqlite:///") and database_url != "sqlite:///:memory:":
            # Ensure data directory exists
            data_dir = os.path.dirname(database_url[len("sqlite:///"):])
            if data_dir:
                os.makedirs(data_dir, exist_ok=True)

        # StaticPool keeps in-memory databases alive across sessions
        engine_kwargs = {"echo": False}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": 20
            }
            engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(database_url, **engine_kwargs)

        # expire_on_commit=False so returned records stay readable after the session closes
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    @contextmanager
    def _session_scope(self, operation: str):
        """Session context that converts SQLAlchemy failures into StorageError"""
        session = self.get_session()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Storage failure during {operation}: {e}")
            raise StorageError(f"Storage failure during {operation}") from e
        finally:
            session.close()

    def dispose(self):
        """Release pooled connections"""
        self.engine.dispose()

    # Registration Token Operations
    def add_registration_token(self, token: str, expires_at: datetime) -> RegistrationToken:
        with self._session_scope("add_registration_token") as session:
            record = RegistrationToken(token=token, expires_at=expires_at, used=False)
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get_registration_token(self, token: str) -> Optional[RegistrationToken]:
        with self._session_scope("get_registration_token") as session:
            return session.query(RegistrationToken).filter_by(token=token).first()

    def consume_registration_token(self, token: str, agent_id: str) -> bool:
        """
        Atomically mark a token as used.

        Returns:
            bool: True if this call consumed the token, False if it was already used or unknown
        """
        with self._session_scope("consume_registration_token") as session:
            result = session.execute(
                update(RegistrationToken)
                .where(RegistrationToken.token == token, RegistrationToken.used.is_(False))
                .values(used=True, used_at=utcnow(), used_by_agent_id=agent_id)
            )
            session.commit()
            return result.rowcount == 1

    # Agent Operations
    def add_agent(self, agent_id: str, hostname: str, ip: Optional[str], status: str = 'registered') -> Agent:
        with self._session_scope("add_agent") as session:
            agent = Agent(id=agent_id, hostname=hostname, ip=ip, status=status, last_seen_at=utcnow())
            session.add(agent)
            session.commit()
            session.refresh(agent)
            return agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._session_scope("get_agent") as session:
            return session.query(Agent).filter_by(id=agent_id).first()

    def get_agents(self) -> List[Agent]:
        with self._session_scope("get_agents") as session:
            return session.query(Agent).order_by(Agent.registered_at, Agent.id).all()

    def update_agent(self, agent_id: str, **updates) -> Optional[Agent]:
        with self._session_scope("update_agent") as session:
            agent = session.query(Agent).filter_by(id=agent_id).first()
            if not agent:
                return None
            for key, value in updates.items():
                setattr(agent, key, value)
            session.commit()
            session.refresh(agent)
            return agent

    # Command Operations
    def add_command(self, command_id: str, agent_id: str, command_text: str) -> Command:
        with self._session_scope("add_command") as session:
            command = Command(id=command_id, agent_id=agent_id, command=command_text, status='pending')
            session.add(command)
            session.commit()
            session.refresh(command)
            return command

    def get_command(self, command_id: str) -> Optional[Command]:
        with self._session_scope("get_command") as session:
            return session.query(Command).filter_by(id=command_id).first()

    def get_commands_for_agent(self, agent_id: str) -> List[Command]:
        """Command history for an agent, oldest first"""
        with self._session_scope("get_commands_for_agent") as session:
            return (
                session.query(Command)
                .filter_by(agent_id=agent_id)
                .order_by(Command.created_at, Command.id)
                .all()
            )

    def get_commands_by_status(self, status: str, agent_id: Optional[str] = None) -> List[Command]:
        with self._session_scope("get_commands_by_status") as session:
            query = session.query(Command).filter_by(status=status)
            if agent_id is not None:
                query = query.filter_by(agent_id=agent_id)
            return query.order_by(Command.created_at, Command.id).all()

    def transition_command(self, command_id: str, from_status: str, **updates) -> Optional[Command]:
        """
        Compare-and-set a command's fields.

        The update only applies while the command is still in from_status, so
        two racing writers can never both advance the same command.

        Returns:
            The updated command, or None if it no longer matched from_status
        """
        with self._session_scope("transition_command") as session:
            result = session.execute(
                update(Command)
                .where(Command.id == command_id, Command.status == from_status)
                .values(**updates)
            )
            session.commit()
            if result.rowcount != 1:
                return None
            return session.query(Command).filter_by(id=command_id).first()


def get_database_manager() -> DatabaseManager:
    """Get the process-wide DatabaseManager, creating it on first use"""
    global _database_manager_instance

    if _database_manager_instance is not None:
        return _database_manager_instance

    with _database_manager_lock:
        # Another thread might have created it while we waited
        if _database_manager_instance is None:
            from config.settings import AppConfig
            _database_manager_instance = DatabaseManager(AppConfig.DATABASE_URL)
        return _database_manager_instance
