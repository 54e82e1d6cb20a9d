"""
FastAPI dependency injection.

Dependencies provide instances of services, clients, and configuration
to route handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Dependencies can be mocked for testing
- Resource lifecycle (connections, clients) is managed properly

Each dependency is a function that FastAPI calls when needed.
"""

import logging
from contextlib import contextmanager
from typing import Annotated, Generator, Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.messaging.dispatcher import DispatchScheduler, MessageSender, default_worker_id
from ..core.messaging.models import DispatchReport, utcnow
from ..infrastructure.snowflake.client import (
    MockSnowflakeConnection,
    SnowflakeConfig,
    SnowflakeConnection,
    SnowflakeConnectionError,
    create_snowflake_connection,
)
from ..infrastructure.snowflake.repositories import ScheduledMessageRepository
from ..infrastructure.twilio.client import TwilioConfig, create_message_sender

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Global mock instances (shared across requests so data survives between calls)
_mock_snowflake_connection = None
_mock_message_sender = None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate API key from request header.

    The dispatch trigger is meant for an external scheduler (cron, a cloud
    scheduler job), so a shared key is enough here.

    Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8]}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


# ---------------------------------------------------------------------------
# Builders (shared with scripts/run_dispatch.py)
# ---------------------------------------------------------------------------

def snowflake_config_from_settings(settings: Settings) -> SnowflakeConfig:
    return SnowflakeConfig(
        account=settings.snowflake_account,
        user=settings.snowflake_user,
        password=settings.snowflake_password or None,
        private_key_path=settings.snowflake_private_key_path,
        private_key_base64=settings.snowflake_private_key_base64,
        database=settings.snowflake_database,
        schema=settings.snowflake_schema,
        warehouse=settings.snowflake_warehouse,
        role=settings.snowflake_role,
    )


@contextmanager
def open_connection(settings: Settings) -> Generator[SnowflakeConnection, None, None]:
    """
    Yield a database connection for one unit of work.

    In mock mode, we reuse the same connection across requests
    so that data persists during the testing session.
    """
    global _mock_snowflake_connection

    if settings.snowflake_mock_mode:
        if _mock_snowflake_connection is None:
            _mock_snowflake_connection = MockSnowflakeConnection()
            logger.info("Created shared mock Snowflake connection")
        yield _mock_snowflake_connection
    else:
        config = snowflake_config_from_settings(settings)
        with create_snowflake_connection(config=config) as conn:
            yield conn


def build_message_sender(settings: Settings) -> MessageSender:
    """
    Create the message sender for the current settings.

    The mock sender is shared so tests and local runs can inspect what
    would have been sent.
    """
    global _mock_message_sender

    if settings.twilio_mock_mode:
        if _mock_message_sender is None:
            _mock_message_sender = create_message_sender(mock_mode=True)
            logger.info("Created shared mock message sender")
        return _mock_message_sender

    config = TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        messaging_service_sid=settings.twilio_messaging_service_sid,
        timeout_seconds=settings.twilio_timeout_seconds,
    )
    return create_message_sender(config=config)


def build_scheduler(
    settings: Settings,
    repository: ScheduledMessageRepository,
    sender: MessageSender,
    worker_id: Optional[str] = None,
) -> DispatchScheduler:
    return DispatchScheduler(
        gateway=repository,
        sender=sender,
        worker_id=worker_id or settings.dispatch_worker_id,
        max_attempts=settings.dispatch_max_attempts,
        claim_ttl=settings.dispatch_claim_ttl,
        stale_after=settings.dispatch_stale_after,
        keep_sent=settings.dispatch_keep_sent,
    )


class ConnectionPerRunDispatcher:
    """
    Dispatch runner for long-lived workers.

    Every run opens its own connection, so a dropped Snowflake session only
    costs the run it happened in. A connection that cannot be opened aborts
    that run the same way a failed due-set fetch does.
    """

    def __init__(self, settings: Settings, sender: MessageSender) -> None:
        self._settings = settings
        self._sender = sender
        self._worker_id = settings.dispatch_worker_id or default_worker_id()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def run(self) -> DispatchReport:
        try:
            with open_connection(self._settings) as conn:
                scheduler = build_scheduler(
                    self._settings,
                    ScheduledMessageRepository(conn),
                    self._sender,
                    worker_id=self._worker_id,
                )
                return scheduler.run()
        except SnowflakeConnectionError as e:
            logger.error(
                "Dispatch run aborted: could not connect to Snowflake",
                extra={"worker_id": self._worker_id, "error": str(e)}
            )
            return DispatchReport(aborted=True, error=str(e), finished_at=utcnow())


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

def get_scheduled_message_repository(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Generator[ScheduledMessageRepository, None, None]:
    """
    Provide ScheduledMessageRepository with database connection.

    This is a generator function (yields instead of returns) because
    the connection must be closed after the request. FastAPI handles
    the generator lifecycle.
    """
    with open_connection(settings) as conn:
        yield ScheduledMessageRepository(conn)


def get_message_sender(
    settings: Annotated[Settings, Depends(get_settings)],
) -> MessageSender:
    return build_message_sender(settings)


def get_dispatch_scheduler(
    settings: Annotated[Settings, Depends(get_settings)],
    repository: Annotated[ScheduledMessageRepository, Depends(get_scheduled_message_repository)],
    sender: Annotated[MessageSender, Depends(get_message_sender)],
) -> DispatchScheduler:
    """
    Provide a DispatchScheduler bound to this request's connection.

    The scheduler holds no state between runs, so a fresh one per
    request is fine.
    """
    return build_scheduler(settings, repository, sender)


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
AuthenticatedCaller = Annotated[str, Depends(verify_api_key)]
DispatchSchedulerDep = Annotated[DispatchScheduler, Depends(get_dispatch_scheduler)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
