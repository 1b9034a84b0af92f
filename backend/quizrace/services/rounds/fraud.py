"""Fraud signals and scoring.

A participant's fraud score is the capped sum of the weights of every signal
recorded against them. Crossing the global threshold makes the participant
ineligible to win and ends their game.
"""

import hmac
import statistics
from enum import Enum
from typing import Iterable, List, Optional, Sequence


class FraudSignal(str, Enum):
    ANSWER_TOO_FAST = 'answer_too_fast'
    SESSION_MISMATCH = 'session_mismatch'
    DEVICE_MISMATCH = 'device_mismatch'
    TOO_MANY_FAST_RESPONSES = 'too_many_fast_responses'
    CONSISTENT_TIMING = 'consistent_timing'
    REPETITIVE_INTERVALS = 'repetitive_intervals'
    EXCESSIVE_DEVICE_USAGE = 'excessive_device_usage'
    EXCESSIVE_DAILY_PARTICIPATIONS = 'excessive_daily_participations'


DEFAULT_SIGNAL_WEIGHTS = {
    FraudSignal.ANSWER_TOO_FAST: 0.3,
    FraudSignal.SESSION_MISMATCH: 0.8,
    FraudSignal.DEVICE_MISMATCH: 0.8,
    FraudSignal.TOO_MANY_FAST_RESPONSES: 0.4,
    FraudSignal.CONSISTENT_TIMING: 0.3,
    FraudSignal.REPETITIVE_INTERVALS: 0.2,
    FraudSignal.EXCESSIVE_DEVICE_USAGE: 0.5,
    FraudSignal.EXCESSIVE_DAILY_PARTICIPATIONS: 0.3,
}
UNKNOWN_SIGNAL_WEIGHT = 0.2

# Timing pattern heuristics
FAST_RESPONSES_LIMIT = 2
CONSISTENT_STDDEV = 0.5
CONSISTENT_MEAN = 2.0
MIN_ANSWERS_FOR_CONSISTENCY = 4


class FraudScorer:
    def __init__(
        self,
        threshold: float = 0.8,
        min_answer_time: float = 0.5,
        weights: Optional[dict] = None,
        max_same_device: int = 3,
        max_daily_participations: int = 5,
    ):
        self.threshold = threshold
        self.min_answer_time = min_answer_time
        self.weights = {signal.value: weight for signal, weight in DEFAULT_SIGNAL_WEIGHTS.items()}
        for name, weight in (weights or {}).items():
            key = name.value if isinstance(name, FraudSignal) else str(name)
            self.weights[key] = float(weight)
        self.max_same_device = max_same_device
        self.max_daily_participations = max_daily_participations

    @classmethod
    def from_config(cls, config) -> 'FraudScorer':
        return cls(
            threshold=float(config.get('FRAUD_THRESHOLD', 0.8)),
            min_answer_time=float(config.get('FRAUD_MIN_ANSWER_TIME', 0.5)),
            weights=config.get('FRAUD_SIGNAL_WEIGHTS') or {},
            max_same_device=int(config.get('MAX_SAME_DEVICE_PARTICIPANTS', 3)),
            max_daily_participations=int(config.get('MAX_DAILY_PARTICIPATIONS', 5)),
        )

    def weight(self, signal) -> float:
        name = signal.value if isinstance(signal, FraudSignal) else str(signal)
        return self.weights.get(name, UNKNOWN_SIGNAL_WEIGHT)

    def evaluate(self, signals: Iterable) -> float:
        """Score in [0, 1]: the summed weights, capped at 1.0."""
        total = sum(self.weight(s) for s in signals)
        # Rounded so that 0.3 + 0.3 + 0.2 compares equal to the threshold
        return round(min(1.0, total), 6)

    def is_fraudulent(self, score: float) -> bool:
        return score >= self.threshold

    def continuity_signals(self, participant, session_id: str, device_fingerprint: str) -> List[FraudSignal]:
        signals = []
        if not hmac.compare_digest(str(participant.session_id), str(session_id or '')):
            signals.append(FraudSignal.SESSION_MISMATCH)
        if not hmac.compare_digest(str(participant.device_fingerprint), str(device_fingerprint or '')):
            signals.append(FraudSignal.DEVICE_MISMATCH)
        return signals

    def latency_signals(self, time_taken: float) -> List[FraudSignal]:
        if time_taken < self.min_answer_time:
            return [FraudSignal.ANSWER_TOO_FAST]
        return []

    def timing_pattern_signals(self, question_times: Sequence[float]) -> List[FraudSignal]:
        """Whole-game timing analysis run once a participant completes."""
        signals = []
        times = list(question_times)
        if not times:
            return signals

        fast = [t for t in times if t < self.min_answer_time]
        if len(fast) > FAST_RESPONSES_LIMIT:
            signals.append(FraudSignal.TOO_MANY_FAST_RESPONSES)

        if len(times) >= MIN_ANSWERS_FOR_CONSISTENCY:
            mean = statistics.fmean(times)
            if statistics.pstdev(times) < CONSISTENT_STDDEV and mean < CONSISTENT_MEAN:
                signals.append(FraudSignal.CONSISTENT_TIMING)

        intervals = [round(abs(b - a), 3) for a, b in zip(times, times[1:])]
        if intervals and len(set(intervals)) < len(intervals) * 0.5:
            signals.append(FraudSignal.REPETITIVE_INTERVALS)
        return signals

    def registration_signals(self, device_count_24h: int, email_count_today: int) -> List[FraudSignal]:
        signals = []
        if device_count_24h > self.max_same_device:
            signals.append(FraudSignal.EXCESSIVE_DEVICE_USAGE)
        if email_count_today > self.max_daily_participations:
            signals.append(FraudSignal.EXCESSIVE_DAILY_PARTICIPATIONS)
        return signals

    def risk_level(self, score: float) -> str:
        if score >= self.threshold:
            return 'high'
        if score >= 0.5:
            return 'medium'
        if score >= 0.2:
            return 'low'
        return 'minimal'
