"""Tests for pacing and fingerprint helpers."""

import random

import pytest

from stock_monitor.anti_detection import (
    USER_AGENTS,
    BackoffPolicy,
    UserAgentRotator,
    has_captcha,
    is_challenge_page,
    jitter,
)


class TestJitter:
    """Tests for jitter."""

    def test_within_bounds(self):
        rng = random.Random(1)
        for _ in range(200):
            value = jitter(2000, 15, rng)
            assert 1700 <= value <= 2300

    def test_zero_percent_is_exact(self):
        assert jitter(1234, 0, random.Random(3)) == 1234

    def test_zero_base(self):
        assert jitter(0, 50, random.Random(3)) == 0


class TestBackoffPolicy:
    """Tests for exponential backoff."""

    def test_never_exceeds_cap(self):
        policy = BackoffPolicy(rng=random.Random(42))
        for n in range(0, 100):
            assert policy.delay_ms(n) <= 300_000

    def test_raw_delay_doubles_until_cap(self):
        policy = BackoffPolicy()
        assert policy.raw_delay_ms(0) == 1000
        assert policy.raw_delay_ms(1) == 2000
        assert policy.raw_delay_ms(5) == 32_000
        assert policy.raw_delay_ms(9) == 300_000
        assert policy.raw_delay_ms(10_000) == 300_000

    def test_raw_delay_non_decreasing(self):
        policy = BackoffPolicy()
        delays = [policy.raw_delay_ms(n) for n in range(20)]
        assert delays == sorted(delays)

    def test_deterministic_with_seeded_rng(self):
        a = BackoffPolicy(rng=random.Random(7))
        b = BackoffPolicy(rng=random.Random(7))
        assert [a.delay_ms(n) for n in range(10)] == [b.delay_ms(n) for n in range(10)]

    def test_jitter_within_twenty_percent(self):
        policy = BackoffPolicy(rng=random.Random(5))
        for _ in range(100):
            assert 3200 <= policy.delay_ms(2) <= 4800

    def test_without_jitter(self):
        policy = BackoffPolicy(jitter_percent=0)
        assert policy.delay_ms(3) == 8000


class TestUserAgentRotator:
    """Tests for user agent rotation."""

    def test_rotate_changes_agent(self):
        rotator = UserAgentRotator(rng=random.Random(0))
        before = rotator.current
        assert rotator.rotate() != before
        assert rotator.current in USER_AGENTS

    def test_single_agent_stays(self):
        rotator = UserAgentRotator(agents=("only",))
        assert rotator.rotate() == "only"

    def test_empty_agents_rejected(self):
        with pytest.raises(ValueError):
            UserAgentRotator(agents=())

    def test_headers(self):
        rotator = UserAgentRotator(rng=random.Random(0))
        headers = rotator.headers(referer="https://shop.example/")
        assert headers["User-Agent"] == rotator.current
        assert headers["Referer"] == "https://shop.example/"
        assert "Referer" not in rotator.headers()


class TestChallengeDetection:
    """Tests for bot challenge and captcha markers."""

    def test_cloudflare_interstitial(self):
        html = "<title>Just a moment...</title><div id='cf-browser-verification'></div>"
        assert is_challenge_page(html, 503) is True
        assert is_challenge_page(html, 403) is True

    def test_markers_on_normal_status_ignored(self):
        assert is_challenge_page("<p>Just a moment</p>", 200) is False

    def test_plain_forbidden_is_not_challenge(self):
        assert is_challenge_page("<h1>Forbidden</h1>", 403) is False

    def test_captcha(self):
        assert has_captcha('<div class="g-recaptcha"></div>') is True
        assert has_captcha("<div>Add to cart</div>") is False
