"""
Tests for the long-running worker's dispatch runner.

The runner opens a fresh connection for every run, so these swap
open_connection for a counting stand-in instead of touching Snowflake.
"""

import threading
from contextlib import contextmanager
from datetime import timedelta

import pytest

from src.api import dependencies
from src.api.dependencies import ConnectionPerRunDispatcher
from src.config.settings import Settings
from src.core.messaging.dispatcher import run_forever
from src.core.messaging.models import MessageStatus, utcnow
from src.infrastructure.snowflake.client import MockSnowflakeConnection, SnowflakeConnectionError


@pytest.fixture
def settings() -> Settings:
    return Settings(
        snowflake_mock_mode=True,
        twilio_mock_mode=True,
        dispatch_worker_id="worker-a:1",
    )


class TestConnectionPerRun:

    def test_each_run_gets_its_own_connection(self, monkeypatch, settings, sender):
        opened = []

        @contextmanager
        def counting_connection(_settings):
            conn = MockSnowflakeConnection()
            opened.append(conn)
            yield conn

        monkeypatch.setattr(dependencies, "open_connection", counting_connection)
        dispatcher = ConnectionPerRunDispatcher(settings, sender)

        assert run_forever(dispatcher, 0, threading.Event(), max_runs=3) == 3

        assert len(opened) == 3
        assert len({id(conn) for conn in opened}) == 3

    def test_recovers_after_connection_is_lost(
        self, monkeypatch, settings, sender, connection, repository, make_message
    ):
        message = make_message(utcnow() - timedelta(minutes=1))
        repository.insert_scheduled(message)
        attempts = []

        @contextmanager
        def flaky_connection(_settings):
            attempts.append(1)
            if len(attempts) == 1:
                raise SnowflakeConnectionError("Database connection failed: session expired")
            yield connection

        monkeypatch.setattr(dependencies, "open_connection", flaky_connection)
        dispatcher = ConnectionPerRunDispatcher(settings, sender)

        first = dispatcher.run()
        second = dispatcher.run()

        assert first.aborted
        assert "session expired" in first.error
        assert first.finished_at is not None
        assert not second.aborted
        assert second.sent == 1
        assert len(sender.sent) == 1

    def test_claims_with_the_configured_worker_id(
        self, monkeypatch, settings, connection, repository, make_message
    ):
        message = make_message(utcnow() - timedelta(minutes=1))
        repository.insert_scheduled(message)

        seen = []

        class InspectingSender:
            """Records the claim as it stands while the provider call is made."""

            def send(self, recipient_phone, body):
                stored = repository.get_scheduled(message.id)
                seen.append((stored.status, stored.claimed_by))
                raise RuntimeError("provider unreachable")

        @contextmanager
        def shared_connection(_settings):
            yield connection

        monkeypatch.setattr(dependencies, "open_connection", shared_connection)
        dispatcher = ConnectionPerRunDispatcher(settings, InspectingSender())

        report = dispatcher.run()

        assert dispatcher.worker_id == "worker-a:1"
        assert seen == [(MessageStatus.CLAIMED, "worker-a:1")]
        assert report.retried == 1
