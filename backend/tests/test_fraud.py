from types import SimpleNamespace

import pytest

from quizrace.services.rounds.fraud import FraudScorer, FraudSignal


@pytest.fixture()
def scorer():
    return FraudScorer()


def test_weights_and_cap(scorer):
    assert scorer.evaluate([FraudSignal.ANSWER_TOO_FAST]) == pytest.approx(0.3)
    assert scorer.evaluate(['unknown_signal']) == pytest.approx(0.2)
    assert scorer.evaluate([FraudSignal.SESSION_MISMATCH, FraudSignal.DEVICE_MISMATCH]) == 1.0
    assert scorer.evaluate([]) == 0.0


def test_threshold_is_inclusive(scorer):
    score = scorer.evaluate([FraudSignal.ANSWER_TOO_FAST, FraudSignal.ANSWER_TOO_FAST, 'anything'])
    assert score == 0.8
    assert scorer.is_fraudulent(score)
    assert not scorer.is_fraudulent(0.79)


def test_config_overrides_weights():
    scorer = FraudScorer.from_config({'FRAUD_SIGNAL_WEIGHTS': {'answer_too_fast': 0.5}, 'FRAUD_THRESHOLD': 0.9})
    assert scorer.weight(FraudSignal.ANSWER_TOO_FAST) == 0.5
    assert scorer.threshold == 0.9


def test_continuity_signals(scorer):
    participant = SimpleNamespace(session_id='s1', device_fingerprint='d1')
    assert scorer.continuity_signals(participant, 's1', 'd1') == []
    assert scorer.continuity_signals(participant, 's2', 'd1') == [FraudSignal.SESSION_MISMATCH]
    assert scorer.continuity_signals(participant, None, None) == [
        FraudSignal.SESSION_MISMATCH,
        FraudSignal.DEVICE_MISMATCH,
    ]


def test_latency_floor(scorer):
    assert scorer.latency_signals(0.3) == [FraudSignal.ANSWER_TOO_FAST]
    assert scorer.latency_signals(0.5) == []


def test_timing_patterns(scorer):
    assert scorer.timing_pattern_signals([2.0, 3.5, 2.5, 4.5]) == []
    assert FraudSignal.TOO_MANY_FAST_RESPONSES in scorer.timing_pattern_signals([0.1, 0.2, 0.3, 4.0])
    robotic = scorer.timing_pattern_signals([1.0, 1.0, 1.0, 1.0, 1.0])
    assert FraudSignal.CONSISTENT_TIMING in robotic
    assert FraudSignal.REPETITIVE_INTERVALS in robotic


def test_registration_limits(scorer):
    assert scorer.registration_signals(3, 5) == []
    assert scorer.registration_signals(4, 6) == [
        FraudSignal.EXCESSIVE_DEVICE_USAGE,
        FraudSignal.EXCESSIVE_DAILY_PARTICIPATIONS,
    ]


def test_risk_levels(scorer):
    assert scorer.risk_level(0.0) == 'minimal'
    assert scorer.risk_level(0.3) == 'low'
    assert scorer.risk_level(0.6) == 'medium'
    assert scorer.risk_level(0.8) == 'high'
