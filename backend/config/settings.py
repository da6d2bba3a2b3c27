"""
Configuration Management for the command server
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler


class HealthCheckFilter(logging.Filter):
    """Filter out health check requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        message = record.getMessage()
        if '/health' in message and ('200 OK' in message or '200' in str(getattr(record, 'args', ''))):
            return False
        return True


def setup_logging(log_to_file: bool = True, filename: str = 'ccserver.log'):
    """
    Configure application logging with rotation.

    Args:
        log_to_file: Also write to a rotating file under the data directory.
            The agent runtime passes False and logs to the console only.
        filename: Log file name inside the logs directory
    """
    root_logger = logging.getLogger()

    # Close and clear any existing handlers so our configuration is used
    # and file descriptors are not leaked
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    level = getattr(logging, AppConfig.LOG_LEVEL.upper(), logging.INFO)
    root_logger.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        from .paths import LOG_DIR

        os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

        # Max 10MB per file, keep 14 backups
        file_handler = RotatingFileHandler(
            os.path.join(LOG_DIR, filename),
            maxBytes=10*1024*1024,
            backupCount=14,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('CCSERVER_HOST', '0.0.0.0')
    PORT = int(os.getenv('CCSERVER_PORT', 8080))

    # Import centralized paths
    from .paths import DATABASE_URL as DEFAULT_DATABASE_URL

    # Database settings
    DATABASE_URL = os.getenv('CCSERVER_DATABASE_URL', DEFAULT_DATABASE_URL)

    # Logging
    LOG_LEVEL = os.getenv('CCSERVER_LOG_LEVEL', 'INFO')

    # Liveness: agents send a heartbeat every 30s, so 90s tolerates two missed beats
    HEARTBEAT_TIMEOUT = float(os.getenv('CCSERVER_HEARTBEAT_TIMEOUT', 90))
    HEARTBEAT_CHECK_INTERVAL = float(os.getenv('CCSERVER_HEARTBEAT_CHECK_INTERVAL', 10))

    # Command expiry (0 disables the corresponding sweep)
    COMMAND_TIMEOUT = float(os.getenv('CCSERVER_COMMAND_TIMEOUT', 3600))
    PENDING_COMMAND_TIMEOUT = float(os.getenv('CCSERVER_PENDING_COMMAND_TIMEOUT', 0))
    COMMAND_SWEEP_INTERVAL = float(os.getenv('CCSERVER_COMMAND_SWEEP_INTERVAL', 60))

    # Authentication
    REGISTRATION_TOKEN_TTL_MINUTES = int(os.getenv('CCSERVER_REGISTRATION_TOKEN_TTL_MINUTES', 15))
    AGENT_CREDENTIAL_MAX_AGE = int(os.getenv('CCSERVER_AGENT_CREDENTIAL_MAX_AGE', 0))

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        if cls.HEARTBEAT_TIMEOUT <= 0:
            raise ValueError(f"Heartbeat timeout must be positive: {cls.HEARTBEAT_TIMEOUT}")

        if cls.HEARTBEAT_CHECK_INTERVAL <= 0:
            raise ValueError(f"Heartbeat check interval must be positive: {cls.HEARTBEAT_CHECK_INTERVAL}")

        if cls.COMMAND_TIMEOUT < 0 or cls.PENDING_COMMAND_TIMEOUT < 0:
            raise ValueError("Command timeouts cannot be negative")

        if cls.COMMAND_SWEEP_INTERVAL <= 0:
            raise ValueError(f"Command sweep interval must be positive: {cls.COMMAND_SWEEP_INTERVAL}")

        if cls.REGISTRATION_TOKEN_TTL_MINUTES < 1:
            raise ValueError(
                f"Registration token TTL must be at least 1 minute: {cls.REGISTRATION_TOKEN_TTL_MINUTES}"
            )

        return True
