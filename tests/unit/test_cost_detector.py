"""Unit tests for cost-attack detection."""

from __future__ import annotations

import threading

import pytest

from llm_shield.config import CostConfig
from llm_shield.security.cost_detector import CostDetector, positional_similarity
from llm_shield.security.models import CostAttackType, Severity


class TestPositionalSimilarity:
    """Tests for positional_similarity."""

    def test_identical_after_normalization(self) -> None:
        assert positional_similarity("  Hello World ", "hello world") == 1.0

    def test_one_character_differs(self) -> None:
        assert positional_similarity("abcd", "abce") == pytest.approx(0.75)

    def test_length_difference(self) -> None:
        assert positional_similarity("abc", "abcdef") == pytest.approx(0.5)

    def test_reordering_scores_low(self) -> None:
        assert positional_similarity("one two three", "three two one") < 0.8

    def test_both_empty(self) -> None:
        assert positional_similarity("", "   ") == 1.0


class TestTokenChecks:
    """Tests for token-count based detection."""

    def test_token_exhaustion(self, clock) -> None:
        result = CostDetector(clock=clock).analyze("x", 12000)
        assert result.is_cost_attack is True
        assert result.attack_type == CostAttackType.TOKEN_EXHAUSTION
        assert result.severity == Severity.CRITICAL
        assert result.risk_score == 40
        assert result.should_block is True

    def test_context_window(self, clock) -> None:
        result = CostDetector(clock=clock).analyze("x", 9000)
        assert result.attack_type == CostAttackType.CONTEXT_WINDOW
        assert result.severity == Severity.HIGH
        assert result.risk_score == 25
        assert result.should_block is False

    def test_thresholds_are_exclusive(self, clock) -> None:
        detector = CostDetector(clock=clock)
        assert detector.analyze("a", 8000).is_cost_attack is False
        assert detector.analyze("b", 10000).attack_type == CostAttackType.CONTEXT_WINDOW

    def test_normal_request(self, clock) -> None:
        result = CostDetector(clock=clock).analyze("hello", 2)
        assert result.is_cost_attack is False
        assert result.attack_type is None
        assert result.severity == Severity.LOW
        assert result.reasoning == ["No cost-based attack patterns detected"]


class TestLoopDetection:
    """Tests for repeated-prompt detection."""

    def test_fourth_repeat_is_loop(self, clock) -> None:
        detector = CostDetector(clock=clock)
        results = []
        for _ in range(4):
            results.append(detector.analyze("Tell me a joke", 4, "u1"))
            clock.advance(5)
        assert [r.is_loop for r in results] == [False, False, False, True]
        loop = results[-1]
        assert loop.attack_type == CostAttackType.INFINITE_LOOP
        assert loop.loop_count == 3
        assert loop.severity == Severity.HIGH
        assert loop.risk_score == 35

    def test_loop_critical_past_count(self, clock) -> None:
        detector = CostDetector(clock=clock)
        result = None
        for _ in range(7):
            result = detector.analyze("Tell me a joke", 4, "u1")
            clock.advance(2)
        assert result is not None
        assert result.loop_count == 6
        assert result.severity == Severity.CRITICAL
        assert result.should_block is True

    def test_window_expiry_does_not_compound(self, clock) -> None:
        detector = CostDetector(clock=clock)
        for _ in range(3):
            detector.analyze("Tell me a joke", 4, "u1")
            clock.advance(1)
        clock.advance(61)
        result = detector.analyze("Tell me a joke", 4, "u1")
        assert result.is_loop is False
        assert result.loop_count == 0

    def test_identities_are_independent(self, clock) -> None:
        detector = CostDetector(clock=clock)
        for _ in range(3):
            detector.analyze("Tell me a joke", 4, "u1")
        assert detector.analyze("Tell me a joke", 4, "u2").is_loop is False

    def test_loop_never_lowers_critical(self, clock) -> None:
        detector = CostDetector(clock=clock)
        big = "y" * 10
        for _ in range(3):
            detector.analyze(big, 12000, "u1")
            clock.advance(1)
        result = detector.analyze(big, 12000, "u1")
        assert result.is_loop is True
        assert result.severity == Severity.CRITICAL
        assert result.attack_type == CostAttackType.INFINITE_LOOP
        assert result.risk_score == 75


class TestRapidFire:
    """Tests for rapid-fire detection."""

    def test_eleventh_request_in_window(self, clock) -> None:
        detector = CostDetector(clock=clock)
        results = []
        for i in range(11):
            results.append(detector.analyze(chr(ord("a") + i) * 20, 4))
            clock.advance(0.5)
        assert not any(r.is_rapid_fire for r in results[:10])
        assert results[10].is_rapid_fire is True
        assert results[10].severity.rank >= Severity.MEDIUM.rank

    def test_spread_out_requests(self, clock) -> None:
        detector = CostDetector(clock=clock)
        for i in range(15):
            result = detector.analyze(chr(ord("a") + i) * 20, 4)
            clock.advance(2)
        assert result.is_rapid_fire is False


class TestHistory:
    """Tests for history bounds and maintenance."""

    def test_history_is_capped(self, clock) -> None:
        detector = CostDetector(CostConfig(history_cap=5), clock=clock)
        for i in range(20):
            detector.analyze(f"p{i}", 1, "u1")
            clock.advance(30)
        assert detector.history_size("u1") == 5

    def test_purge_expired(self, clock) -> None:
        detector = CostDetector(clock=clock)
        detector.analyze("old", 1, "stale")
        clock.advance(100)
        detector.analyze("new", 1, "fresh")
        clock.advance(3550)
        assert detector.purge_expired() == 1
        assert detector.history_size("stale") == 0
        assert detector.history_size("fresh") == 1

    def test_user_stats(self, clock) -> None:
        detector = CostDetector(clock=clock)
        detector.analyze("a", 10, "u1")
        clock.advance(700)
        detector.analyze("b", 30, "u1")
        stats = detector.get_user_stats("u1")
        assert stats.total_requests == 2
        assert stats.total_tokens == 40
        assert stats.avg_tokens_per_request == 20
        assert stats.requests_last_10_min == 1

    def test_unknown_user_stats(self) -> None:
        stats = CostDetector().get_user_stats("nobody")
        assert stats.total_requests == 0
        assert stats.avg_tokens_per_request == 0

    def test_reset(self, clock) -> None:
        detector = CostDetector(clock=clock)
        detector.analyze("a", 1, "u1")
        detector.reset()
        assert detector.history_size("u1") == 0

    def test_concurrent_analysis_keeps_every_entry(self) -> None:
        detector = CostDetector(CostConfig(history_cap=1000))

        def worker(n: int) -> None:
            for i in range(50):
                detector.analyze(f"thread {n} request {i}", 1, "shared")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert detector.history_size("shared") == 200
