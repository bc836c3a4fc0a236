# tests/test_base_scraper.py

"""Tests for BaseScraper transports, block detection and page parsing."""

import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

from src.errors import FetchError
from src.models.quote import Availability
from src.scrapers.base_scraper import BaseScraper, block_reason

_PAGE = (
    "<html><body><h1>Noise Cancelling Headphones</h1>"
    '<span class="price">$1,299.00</span>'
    '<span class="was">$1,499.99</span>'
    '<div class="stock">In Stock</div></body></html>'
)

_KEYWORDS = ["captcha", "unusual traffic"]


class _StubScraper(BaseScraper):
    def _get_homepage(self) -> str:
        return "https://example.com"


def _response(status: int, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    return resp


def _make_scraper(session: MagicMock) -> _StubScraper:
    scraper = _StubScraper("test")
    scraper.session = session
    scraper.selectors = {
        "price": ".price",
        "original_price": ".was",
        "title": "h1",
        "availability": ".stock",
    }
    return scraper


@patch("src.scrapers.base_scraper.cloudscraper")
@patch("src.scrapers.base_scraper.curl_requests.Session")
class TestFetchQuote(unittest.TestCase):
    """fetch_quote turns one page into one RawQuote or a FetchError."""

    def test_parses_price_stock_and_title(
        self, mock_session_cls: MagicMock, mock_cs: MagicMock,
    ) -> None:
        """A 200 product page yields a normalised quote."""
        session = MagicMock()
        session.get.return_value = _response(200, _PAGE)

        quote = _make_scraper(session).fetch_quote("https://example.com/p")

        self.assertEqual(quote.price, Decimal("1299.00"))
        self.assertEqual(quote.original_price, Decimal("1499.99"))
        self.assertEqual(quote.availability, Availability.IN_STOCK)
        self.assertEqual(quote.title, "Noise Cancelling Headphones")
        self.assertEqual(quote.currency, "USD")
        mock_cs.create_scraper.assert_not_called()

    def test_page_without_price_raises(
        self, mock_session_cls: MagicMock, mock_cs: MagicMock,
    ) -> None:
        """A page with no price element is a fetch failure."""
        session = MagicMock()
        session.get.return_value = _response(
            200, "<html><body><h1>Gone</h1></body></html>"
        )
        scraper = _make_scraper(session)

        with self.assertRaises(FetchError) as ctx:
            scraper.fetch_quote("https://example.com/p")
        self.assertEqual(ctx.exception.reason, "no price on page")
        self.assertEqual(scraper.breaker.failures, 1)

    def test_http_error_falls_back_to_cloudscraper(
        self, mock_session_cls: MagicMock, mock_cs: MagicMock,
    ) -> None:
        """A non-200 from curl_cffi retries once through cloudscraper."""
        session = MagicMock()
        session.get.return_value = _response(403)
        fallback = MagicMock()
        fallback.get.return_value = _response(200, _PAGE)
        mock_cs.create_scraper.return_value = fallback

        quote = _make_scraper(session).fetch_quote("https://example.com/p")

        self.assertEqual(quote.price, Decimal("1299.00"))
        fallback.get.assert_called_once()

    def test_both_transports_failing_raises(
        self, mock_session_cls: MagicMock, mock_cs: MagicMock,
    ) -> None:
        """No page from either transport is reported as not retrieved."""
        session = MagicMock()
        session.get.side_effect = ConnectionError("reset")
        fallback = MagicMock()
        fallback.get.return_value = _response(503)
        mock_cs.create_scraper.return_value = fallback

        with self.assertRaises(FetchError) as ctx:
            _make_scraper(session).fetch_quote("https://example.com/p")
        self.assertEqual(ctx.exception.reason, "page not retrieved")
        self.assertEqual(ctx.exception.source, "test")

    def test_captcha_page_is_rejected(
        self, mock_session_cls: MagicMock, mock_cs: MagicMock,
    ) -> None:
        """A short CAPTCHA interstitial never parses as a product."""
        session = MagicMock()
        session.get.return_value = _response(
            200, "<html>Please solve the captcha</html>"
        )
        fallback = MagicMock()
        fallback.get.return_value = _response(
            200, "<html>We detected unusual traffic</html>"
        )
        mock_cs.create_scraper.return_value = fallback

        with self.assertRaises(FetchError):
            _make_scraper(session).fetch_quote("https://example.com/p")

    def test_referer_is_homepage(
        self, mock_session_cls: MagicMock, mock_cs: MagicMock,
    ) -> None:
        """Requests carry the default headers plus a homepage Referer."""
        session = MagicMock()
        session.get.return_value = _response(200, _PAGE)
        scraper = _make_scraper(session)

        scraper.fetch_quote("https://example.com/p")

        headers = session.get.call_args.kwargs["headers"]
        self.assertEqual(headers["Referer"], "https://example.com")
        self.assertIn("Accept-Language", headers)
        self.assertEqual(
            session.get.call_args.kwargs["timeout"],
            scraper.settings.REQUEST_TIMEOUT,
        )

    @patch("src.scrapers.base_scraper.time.monotonic")
    def test_fallback_gets_remaining_budget(
        self,
        mock_monotonic: MagicMock,
        mock_session_cls: MagicMock,
        mock_cs: MagicMock,
    ) -> None:
        """cloudscraper only gets what curl_cffi left of the timeout."""
        mock_monotonic.side_effect = [0.0, 10.0]
        session = MagicMock()
        session.get.return_value = _response(503)
        fallback = MagicMock()
        fallback.get.return_value = _response(200, _PAGE)
        mock_cs.create_scraper.return_value = fallback
        scraper = _make_scraper(session)

        scraper.fetch_quote("https://example.com/p")

        self.assertEqual(
            fallback.get.call_args.kwargs["timeout"],
            scraper.settings.REQUEST_TIMEOUT - 10.0,
        )

    @patch("src.scrapers.base_scraper.time.monotonic")
    def test_spent_budget_skips_fallback(
        self,
        mock_monotonic: MagicMock,
        mock_session_cls: MagicMock,
        mock_cs: MagicMock,
    ) -> None:
        """A slow primary leaves no room for a second transport."""
        session = MagicMock()
        session.get.return_value = _response(503)
        scraper = _make_scraper(session)
        mock_monotonic.side_effect = [
            0.0, scraper.settings.REQUEST_TIMEOUT - 0.5,
        ]

        with self.assertRaises(FetchError) as ctx:
            scraper.fetch_quote("https://example.com/p")

        self.assertEqual(ctx.exception.reason, "page not retrieved")
        mock_cs.create_scraper.assert_not_called()


class TestBlockReason(unittest.TestCase):
    """Bot-wall detection on fetched HTML."""

    def test_cloudflare_challenge(self) -> None:
        reason = block_reason(
            "<html><title>Just a moment...</title></html>", _KEYWORDS,
        )
        self.assertEqual(reason, "cloudflare challenge (just a moment)")

    def test_short_captcha_page(self) -> None:
        reason = block_reason("<html>Solve the CAPTCHA</html>", _KEYWORDS)
        self.assertEqual(reason, "captcha page (captcha)")

    def test_large_product_page_may_mention_captcha(self) -> None:
        """Reviews on a real page can contain the word."""
        page = "<html><body>" + "review text captcha " * 400 + "</body></html>"
        self.assertIsNone(block_reason(page, _KEYWORDS))

    def test_plain_page_passes(self) -> None:
        self.assertIsNone(block_reason(_PAGE, _KEYWORDS))


@patch("src.scrapers.base_scraper.cloudscraper")
@patch("src.scrapers.base_scraper.curl_requests.Session")
class TestBreakerIntegration(unittest.TestCase):
    """fetch_quote feeds and honours the source's breaker."""

    def _failing(self, mock_cs: MagicMock) -> _StubScraper:
        session = MagicMock()
        session.get.return_value = _response(500)
        mock_cs.create_scraper.return_value.get.return_value = (
            _response(500)
        )
        return _make_scraper(session)

    def test_threshold_failures_trip_the_breaker(
        self, mock_session_cls: MagicMock, mock_cs: MagicMock,
    ) -> None:
        """Once tripped, calls fail fast without touching the network."""
        scraper = self._failing(mock_cs)
        for _ in range(scraper.settings.CIRCUIT_BREAKER_THRESHOLD):
            with self.assertRaises(FetchError):
                scraper.fetch_quote("https://example.com/p")
        self.assertTrue(scraper.breaker.is_open)

        scraper.session.get.reset_mock()
        with self.assertRaises(FetchError) as ctx:
            scraper.fetch_quote("https://example.com/p")
        self.assertEqual(ctx.exception.reason, "circuit open")
        scraper.session.get.assert_not_called()

    def test_parse_failure_counts_and_success_clears(
        self, mock_session_cls: MagicMock, mock_cs: MagicMock,
    ) -> None:
        session = MagicMock()
        session.get.side_effect = [
            _response(200, "<html><body>no price</body></html>"),
            _response(200, _PAGE),
        ]
        scraper = _make_scraper(session)

        with self.assertRaises(FetchError):
            scraper.fetch_quote("https://example.com/p")
        self.assertEqual(scraper.breaker.failures, 1)

        scraper.fetch_quote("https://example.com/p")
        self.assertEqual(scraper.breaker.failures, 0)


class TestExtractPrice(unittest.TestCase):
    """Price text normalisation."""

    def test_currency_and_thousands(self) -> None:
        self.assertEqual(
            BaseScraper.extract_price("$1,299.99"), Decimal("1299.99")
        )

    def test_whole_number(self) -> None:
        self.assertEqual(BaseScraper.extract_price("USD 42"), Decimal("42"))

    def test_no_digits(self) -> None:
        self.assertIsNone(BaseScraper.extract_price("See price in cart"))

    def test_empty(self) -> None:
        self.assertIsNone(BaseScraper.extract_price(""))
        self.assertIsNone(BaseScraper.extract_price(None))


class TestClassifyAvailability(unittest.TestCase):
    """Stock text mapping."""

    def test_in_stock(self) -> None:
        self.assertIs(
            BaseScraper.classify_availability("In Stock."),
            Availability.IN_STOCK,
        )

    def test_out_of_stock_wins_over_available(self) -> None:
        """'Currently unavailable' must not read as 'available'."""
        self.assertIs(
            BaseScraper.classify_availability("Currently unavailable."),
            Availability.OUT_OF_STOCK,
        )

    def test_unknown(self) -> None:
        self.assertIs(
            BaseScraper.classify_availability("Ask a question"),
            Availability.UNKNOWN,
        )
        self.assertIs(
            BaseScraper.classify_availability(None), Availability.UNKNOWN,
        )


if __name__ == "__main__":
    unittest.main()
