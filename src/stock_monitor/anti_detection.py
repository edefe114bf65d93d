"""Request pacing and fingerprint helpers."""

import asyncio
import logging
import random

logger = logging.getLogger(__name__)

USER_AGENTS = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36 Edg/122.0.0.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Safari/605.1.15",
)

CHALLENGE_MARKERS = (
    "cf-browser-verification",
    "cf_chl_opt",
    "challenge-platform",
    "checking your browser",
    "just a moment",
    "_cf_chl",
    "ray id",
)

CAPTCHA_MARKERS = (
    "g-recaptcha",
    "h-captcha",
    "cf-turnstile",
    "captcha-container",
    "recaptcha/api",
    "hcaptcha.com",
    "challenges.cloudflare.com",
)


def jitter(base: float, jitter_percent: float = 15, rng: random.Random | None = None) -> float:
    """Perturb ``base`` by up to +/- ``jitter_percent`` percent.

    Args:
        base: Base value (any unit)
        jitter_percent: Maximum relative deviation in percent
        rng: Random source, defaults to the module-level generator

    Returns:
        Jittered value, rounded to a whole number
    """
    rng = rng or random
    factor = 1 + (rng.random() * 2 - 1) * (jitter_percent / 100)
    return round(base * factor)


class BackoffPolicy:
    """Exponential retry delay keyed on the consecutive error count."""

    def __init__(
        self,
        base_ms: int = 1000,
        cap_ms: int = 300_000,
        jitter_percent: float = 20,
        rng: random.Random | None = None,
    ):
        """Initialize policy.

        Args:
            base_ms: Delay for an error count of zero
            cap_ms: Upper bound before jitter is applied
            jitter_percent: Jitter applied to the capped delay
            rng: Random source, injectable for deterministic tests
        """
        self.base_ms = base_ms
        self.cap_ms = cap_ms
        self.jitter_percent = jitter_percent
        self.rng = rng or random.Random()

    def raw_delay_ms(self, error_count: int) -> int:
        # Exponent is bounded so huge error counts never overflow the float range.
        exponent = min(max(error_count, 0), 64)
        return int(min(self.base_ms * 2**exponent, self.cap_ms))

    def delay_ms(self, error_count: int) -> int:
        """Jittered delay, never above ``cap_ms``."""
        delay = jitter(self.raw_delay_ms(error_count), self.jitter_percent, self.rng)
        return int(min(delay, self.cap_ms))


class UserAgentRotator:
    """Holds the outbound user agent and rotates it on demand."""

    def __init__(self, agents: tuple[str, ...] = USER_AGENTS, rng: random.Random | None = None):
        if not agents:
            raise ValueError("at least one user agent is required")
        self.agents = agents
        self.rng = rng or random.Random()
        self._index = self.rng.randrange(len(agents))

    @property
    def current(self) -> str:
        return self.agents[self._index]

    def rotate(self) -> str:
        """Switch to a different user agent and return it."""
        if len(self.agents) > 1:
            choices = [i for i in range(len(self.agents)) if i != self._index]
            self._index = self.rng.choice(choices)
        logger.info(f"Rotated user agent: {self.current}")
        return self.current

    def headers(self, referer: str | None = None) -> dict[str, str]:
        """Browser-like request headers for the current user agent."""
        headers = {
            "User-Agent": self.current,
            "Accept": (
                "text/html,application/xhtml+xml,application/xml;q=0.9,"
                "image/avif,image/webp,*/*;q=0.8"
            ),
            "Accept-Language": "en-AU,en-GB;q=0.9,en-US;q=0.8,en;q=0.7",
            "DNT": "1",
            "Upgrade-Insecure-Requests": "1",
        }
        if referer:
            headers["Referer"] = referer
        return headers


def is_challenge_page(html: str, status: int | None) -> bool:
    """Check whether a 403/503 response is a bot-challenge interstitial."""
    if status not in (403, 503):
        return False
    lower = html.lower()
    return any(marker in lower for marker in CHALLENGE_MARKERS)


def has_captcha(html: str) -> bool:
    lower = html.lower()
    return any(marker in lower for marker in CAPTCHA_MARKERS)


async def human_delay(min_seconds: float = 0.2, max_seconds: float = 0.8) -> None:
    """Sleep for a random human-like duration."""
    await asyncio.sleep(random.uniform(min_seconds, max_seconds))
