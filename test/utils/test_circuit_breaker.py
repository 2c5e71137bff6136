"""Unit tests for the circuit breaker."""

from bounce_protocol.utils.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3, cooldown_seconds=45)

        breaker.record_failure(now=1)
        breaker.record_failure(now=2)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request(now=3) is True

        breaker.record_failure(now=10)

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request(now=20) is False
        snapshot = breaker.snapshot(now=20)
        assert snapshot.consecutive_failures == 3
        assert snapshot.opened_at == 10
        assert snapshot.retry_in_seconds == 35

    def test_success_resets_consecutive_count(self):
        breaker = CircuitBreaker(failure_threshold=3, cooldown_seconds=45)

        breaker.record_failure(now=1)
        breaker.record_failure(now=2)
        breaker.record_success()
        breaker.record_failure(now=3)
        breaker.record_failure(now=4)

        assert breaker.state == CircuitState.CLOSED

    def test_single_trial_request_after_cooldown(self):
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=45)
        breaker.record_failure(now=10)

        assert breaker.allow_request(now=54.9) is False
        assert breaker.allow_request(now=55) is True
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request(now=55.1) is False

    def test_failed_trial_request_reopens(self):
        breaker = CircuitBreaker(failure_threshold=3, cooldown_seconds=45)
        for t in (1, 2, 3):
            breaker.record_failure(now=t)
        breaker.allow_request(now=50)

        breaker.record_failure(now=56)

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request(now=100) is False
        assert breaker.allow_request(now=101) is True

    def test_successful_trial_request_closes(self):
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=5)
        breaker.record_failure(now=0)
        breaker.allow_request(now=5)

        breaker.record_success()

        snapshot = breaker.snapshot(now=6)
        assert snapshot.state == CircuitState.CLOSED
        assert snapshot.consecutive_failures == 0
        assert snapshot.opened_at is None
        assert snapshot.retry_in_seconds == 0.0

    def test_threshold_is_at_least_one(self):
        breaker = CircuitBreaker(failure_threshold=0)

        assert breaker.failure_threshold == 1

    def test_injected_clock(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=10, clock=clock)

        breaker.record_failure()
        clock.now = 9
        assert breaker.allow_request() is False
        clock.now = 10
        assert breaker.allow_request() is True

    def test_same_sequence_same_trace(self):
        sequence = [
            ("fail", 0), ("fail", 1), ("allow", 2), ("fail", 3),
            ("allow", 10), ("allow", 50), ("fail", 51), ("allow", 96), ("ok", 97),
        ]

        def trace():
            breaker = CircuitBreaker(failure_threshold=3, cooldown_seconds=45)
            states = []
            for event, t in sequence:
                if event == "fail":
                    breaker.record_failure(now=t)
                elif event == "ok":
                    breaker.record_success()
                else:
                    breaker.allow_request(now=t)
                states.append(breaker.state)
            return states

        first = trace()

        assert first == trace()
        assert first[-1] == CircuitState.CLOSED
        assert first[-3] == CircuitState.OPEN
