"""
Tests for the Kopf handlers wiring descriptors into the engine.
"""

import asyncio

import kopf
import pytest

from tomcat_operator import operator
from tomcat_operator.engine import Outcome
from tomcat_operator.resources import DescriptorKey


class StubEngine:
    """Records triggers and answers with a fixed outcome."""

    def __init__(self, outcome=None):
        self.outcome = outcome
        self.triggered = []

    def trigger(self, key):
        self.triggered.append(key)
        future = asyncio.get_running_loop().create_future()
        future.set_result(self.outcome)
        return future


class TestHandlers:
    """Test the Kopf handlers against a stub engine."""

    @pytest.mark.asyncio
    async def test_change_triggers_reconcile(self, monkeypatch):
        """A descriptor change should trigger a reconcile."""
        engine = StubEngine(Outcome.converged())
        monkeypatch.setattr(operator, "ENGINE", engine)

        await operator.tomcat_changed(name="shop", namespace="default", spec={"replicas": 3})

        assert engine.triggered == [DescriptorKey("default", "shop")]

    @pytest.mark.asyncio
    async def test_delete_completes_when_terminated(self, monkeypatch):
        """Deletion should finish once the pass terminates."""
        engine = StubEngine(Outcome.terminated())
        monkeypatch.setattr(operator, "ENGINE", engine)

        await operator.tomcat_deleted(name="shop", namespace="default")

        assert engine.triggered == [DescriptorKey("default", "shop")]

    @pytest.mark.asyncio
    async def test_delete_retries_while_cleanup_pending(self, monkeypatch):
        """Deletion should retry with the pass's backoff delay."""
        monkeypatch.setattr(operator, "ENGINE", StubEngine(Outcome.requeue(4.0)))

        with pytest.raises(kopf.TemporaryError) as info:
            await operator.tomcat_deleted(name="shop", namespace="default")

        assert info.value.delay == 4.0

    @pytest.mark.asyncio
    async def test_delete_during_shutdown_retries(self, monkeypatch):
        """Deletion during shutdown should be retried later."""
        monkeypatch.setattr(operator, "ENGINE", StubEngine(None))

        with pytest.raises(kopf.TemporaryError):
            await operator.tomcat_deleted(name="shop", namespace="default")

    @pytest.mark.asyncio
    async def test_engine_not_started(self, monkeypatch):
        """Handlers should retry while the engine is not running."""
        monkeypatch.setattr(operator, "ENGINE", None)

        with pytest.raises(kopf.TemporaryError):
            await operator.tomcat_changed(name="shop", namespace="default")
