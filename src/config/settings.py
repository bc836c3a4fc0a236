# src/config/settings.py

"""Central configuration for the price_watch engine."""

import os
from pathlib import Path

from curl_cffi.requests import BrowserTypeLiteral
from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    """Read a float override from the environment."""
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    """Read an int override from the environment."""
    raw = os.getenv(name)
    return int(raw) if raw else default


class Settings:
    """Central configuration for the price_watch engine."""

    # --- Fetching ---
    REQUEST_TIMEOUT: int = _env_int("REQUEST_TIMEOUT", 30)
    MAX_RETRIES: int = _env_int("MAX_RETRIES", 3)
    RETRY_DELAY: float = _env_float("RETRY_DELAY", 5.0)
    RATE_LIMIT_INTERVAL: float = _env_float("RATE_LIMIT_INTERVAL", 2.0)
    MAX_CONCURRENT_FETCHES: int = _env_int("MAX_CONCURRENT_FETCHES", 3)

    # --- Resilience ---
    CIRCUIT_BREAKER_THRESHOLD: int = 3  # Consecutive failures to trip
    CIRCUIT_BREAKER_COOLDOWN: float = 300.0
    CAPTCHA_KEYWORDS: list[str] = [
        "captcha",
        "verify you are human",
        "unusual traffic",
        "automated requests",
        "robot check",
    ]

    # --- Scheduling ---
    FULL_SWEEP_CRON: str = os.getenv("FULL_SWEEP_CRON", "0 6 * * *")
    PRIORITY_SWEEP_CRON: str = os.getenv(
        "PRIORITY_SWEEP_CRON", "0 */2 * * *"
    )
    PRIORITY_SWEEP_LIMIT: int = _env_int("PRIORITY_SWEEP_LIMIT", 5)
    SWEEP_POLITENESS_DELAY: float = _env_float(
        "SWEEP_POLITENESS_DELAY", 5.0
    )
    SCHEDULER_TICK_SECONDS: float = 30.0
    SCHEDULER_TIMEZONE: str = os.getenv(
        "SCHEDULER_TIMEZONE", "America/New_York"
    )

    # --- Monitoring ---
    EVALUATION_INTERVAL: float = _env_float(
        "EVALUATION_INTERVAL", 15 * 60.0
    )
    HISTORY_RETENTION: int = _env_int("HISTORY_RETENTION", 1000)
    NOTIFICATION_QUEUE_SIZE: int = 256
    NOTIFICATION_RETENTION: int = 1000

    # --- Notification transport ---
    SMTP_HOST: str = os.getenv("SMTP_HOST", "")
    SMTP_PORT: int = _env_int("SMTP_PORT", 587)
    SMTP_USER: str = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    SMTP_SENDER: str = os.getenv("SMTP_SENDER", "alerts@price-watch.local")
    PUSH_WEBHOOK_URL: str = os.getenv("PUSH_WEBHOOK_URL", "")

    # --- Browser Impersonation ---
    IMPERSONATE_BROWSER: BrowserTypeLiteral = "chrome131"
    DEFAULT_HEADERS: dict[str, str] = {
        "Accept": (
            "text/html,application/xhtml+xml,"
            "application/xml;q=0.9,image/avif,"
            "image/webp,image/apng,*/*;q=0.8"
        ),
        "Accept-Language": "en-US,en;q=0.9",
        "sec-ch-ua": (
            '"Google Chrome";v="131", '
            '"Chromium";v="131", '
            '"Not_A Brand";v="24"'
        ),
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
        "sec-fetch-dest": "document",
        "sec-fetch-mode": "navigate",
        "sec-fetch-site": "none",
        "sec-fetch-user": "?1",
        "Upgrade-Insecure-Requests": "1",
    }

    # --- Paths ---
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    SELECTORS_PATH: Path = BASE_DIR / "src" / "config" / "selectors.json"
    DATA_DIR: Path = Path(
        os.getenv("PRICE_WATCH_DATA_DIR", str(BASE_DIR / "data"))
    )
    HISTORY_DB_PATH: Path = DATA_DIR / "price_history.db"
    CATALOG_DB_PATH: Path = DATA_DIR / "catalog.db"
    LOGS_DIR: Path = BASE_DIR / "logs"
    LOG_KEEP_RUNS: int = _env_int("LOG_KEEP_RUNS", 30)

    # --- Sources (adapter registry) ---
    AVAILABLE_SOURCES: list[dict[str, str]] = [
        {
            "id": "amazon",
            "label": "Amazon",
            "scraper": "src.scrapers.amazon_scraper.AmazonScraper",
        },
        {
            "id": "ebay",
            "label": "eBay",
            "scraper": "src.scrapers.ebay_scraper.EbayScraper",
        },
        {
            "id": "walmart",
            "label": "Walmart",
            "scraper": "src.scrapers.walmart_scraper.WalmartScraper",
        },
        {
            "id": "target",
            "label": "Target",
            "scraper": "src.scrapers.target_scraper.TargetScraper",
        },
    ]
