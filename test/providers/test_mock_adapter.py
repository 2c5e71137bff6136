"""Unit tests for the scripted mock adapter."""

import threading
import time

import pytest

from bounce_protocol.models.adapter import AgentConfig, AgentHealth, AgentProcess
from bounce_protocol.providers.base import (
    ProcessCrashedError,
    ProcessNotRunningError,
    UnknownProcessError,
)
from bounce_protocol.providers.mock import (
    MALFORMED_PREFIX,
    MockAdapter,
    MockAdapterConfig,
    MockResponse,
    garble,
)


def scripted(*outputs, **config) -> MockAdapter:
    responses = [MockResponse(output=output) for output in outputs]
    return MockAdapter(MockAdapterConfig(responses=responses, response_delay=0.01, **config))


class Collector:
    def __init__(self):
        self.chunks = []
        self.received = threading.Event()

    def __call__(self, chunk):
        self.chunks.append(chunk)
        self.received.set()


class TestMockAdapterBasics:
    def test_identity_and_availability(self):
        adapter = MockAdapter()

        assert adapter.name == "mock"
        assert adapter.is_available() is True
        assert adapter.capabilities.supports_conversation is True

    def test_custom_name(self):
        assert MockAdapter(name="fake-claude").name == "fake-claude"

    def test_spawn_returns_healthy_handle(self):
        handle = MockAdapter().spawn(AgentConfig())

        assert handle.adapter_name == "mock"
        assert handle.running is True
        assert handle.health == AgentHealth.HEALTHY

    def test_garble(self):
        assert garble("abc") == MALFORMED_PREFIX + "cba"


class TestMockResponses:
    def test_responses_delivered_in_order(self):
        adapter = scripted("first", "second")
        handle = adapter.spawn(AgentConfig())
        collector = Collector()
        adapter.on_output(handle, collector)

        adapter.send_prompt(handle, "one")
        assert collector.received.wait(2)
        collector.received.clear()
        adapter.send_prompt(handle, "two")
        assert collector.received.wait(2)

        assert collector.chunks == ["first", "second"]

    def test_per_response_delay_overrides_default(self):
        adapter = MockAdapter(
            MockAdapterConfig(
                responses=[MockResponse(output="slow", delay=0.3)], response_delay=0.0
            )
        )
        handle = adapter.spawn(AgentConfig())
        collector = Collector()
        adapter.on_output(handle, collector)

        started = time.monotonic()
        adapter.send_prompt(handle, "go")
        assert collector.received.wait(2)

        assert time.monotonic() - started >= 0.25

    def test_exhausted_script_is_silent(self):
        adapter = scripted()
        handle = adapter.spawn(AgentConfig())
        collector = Collector()
        adapter.on_output(handle, collector)

        adapter.send_prompt(handle, "anyone?")

        assert collector.received.wait(0.1) is False

    def test_timeout_never_answers(self):
        adapter = scripted("never", should_timeout=True)
        handle = adapter.spawn(AgentConfig())
        collector = Collector()
        adapter.on_output(handle, collector)

        adapter.send_prompt(handle, "hello")

        assert collector.received.wait(0.1) is False
        assert adapter.is_alive(handle) is True

    def test_malformed_output(self):
        adapter = scripted("clean", malformed_output=True)
        handle = adapter.spawn(AgentConfig())
        collector = Collector()
        adapter.on_output(handle, collector)

        adapter.send_prompt(handle, "hello")
        assert collector.received.wait(2)

        assert collector.chunks == [garble("clean")]

    def test_unsubscribe_stops_delivery(self):
        adapter = scripted("first")
        handle = adapter.spawn(AgentConfig())
        collector = Collector()
        unsubscribe = adapter.on_output(handle, collector)

        unsubscribe()
        adapter.send_prompt(handle, "hello")

        assert collector.received.wait(0.1) is False

    def test_failing_listener_does_not_block_others(self):
        adapter = scripted("first")
        handle = adapter.spawn(AgentConfig())

        def broken(chunk):
            raise RuntimeError("listener bug")

        collector = Collector()
        adapter.on_output(handle, broken)
        adapter.on_output(handle, collector)
        adapter.send_prompt(handle, "hello")

        assert collector.received.wait(2)


class TestMockFailures:
    def test_crash_on_spawn(self):
        adapter = scripted("x", should_crash=True)
        handle = adapter.spawn(AgentConfig())

        assert handle.running is False
        assert handle.health == AgentHealth.UNHEALTHY
        assert handle.failure_count == 1
        assert adapter.is_alive(handle) is False
        with pytest.raises(ProcessNotRunningError) as exc_info:
            adapter.send_prompt(handle, "hello")
        assert exc_info.value.code == "PROCESS_NOT_RUNNING"
        assert exc_info.value.process_id == handle.id

    def test_crash_after_responses(self):
        adapter = scripted("one", "two", crash_after_responses=1)
        handle = adapter.spawn(AgentConfig())

        adapter.send_prompt(handle, "first")
        with pytest.raises(ProcessCrashedError) as exc_info:
            adapter.send_prompt(handle, "second")

        assert exc_info.value.code == "PROCESS_CRASHED"
        assert handle.running is False
        assert handle.health == AgentHealth.UNHEALTHY
        assert "after 1 responses" in handle.last_error

    def test_unknown_handle(self):
        adapter = MockAdapter()
        stranger = AgentProcess(id="not-mine", adapter_name="mock")

        with pytest.raises(UnknownProcessError) as exc_info:
            adapter.send_prompt(stranger, "hello")

        assert exc_info.value.code == "UNKNOWN_PROCESS"
        assert adapter.is_alive(stranger) is False


class TestMockKill:
    def test_kill_cancels_pending_delivery(self):
        adapter = MockAdapter(
            MockAdapterConfig(responses=[MockResponse(output="late")], response_delay=0.2)
        )
        handle = adapter.spawn(AgentConfig())
        collector = Collector()
        adapter.on_output(handle, collector)

        adapter.send_prompt(handle, "hello")
        adapter.kill(handle)

        assert collector.received.wait(0.4) is False
        assert handle.running is False
        assert handle.health == AgentHealth.UNKNOWN
        assert adapter.is_alive(handle) is False

    def test_kill_is_idempotent(self):
        adapter = MockAdapter()
        handle = adapter.spawn(AgentConfig())

        adapter.kill(handle)
        adapter.kill(handle)

        assert handle.running is False

    def test_prompt_after_kill_is_unknown(self):
        adapter = MockAdapter()
        handle = adapter.spawn(AgentConfig())
        adapter.kill(handle)

        with pytest.raises(UnknownProcessError):
            adapter.send_prompt(handle, "hello")
