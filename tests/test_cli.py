# tests/test_cli.py

"""Tests for CLI argument parsing, helpers and the scrape command."""

import asyncio
import unittest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from main import _build_parser, _dispatch
from src.cli.runner import (
    edited_channels,
    parse_price,
    parse_sources,
    run_scrape,
)
from src.models.quote import Quote
from src.models.watch import NotificationChannels
from src.services.engine import SourceCheck


class TestParser(unittest.TestCase):
    """Subcommand wiring."""

    def test_history_days(self) -> None:
        args = _build_parser().parse_args(["history", "kettle", "-d", "7"])
        self.assertEqual(args.command, "history")
        self.assertEqual(args.product_id, "kettle")
        self.assertEqual(args.days, 7.0)

    def test_check_single_watch(self) -> None:
        args = _build_parser().parse_args(["check", "--watch", "abc"])
        self.assertEqual(args.watch_id, "abc")

    def test_add_product_repeatable_sources(self) -> None:
        args = _build_parser().parse_args(
            [
                "add-product", "kettle", "Kettle",
                "-s", "amazon=https://a/1",
                "-s", "ebay=https://e/1",
                "--featured",
            ]
        )
        self.assertEqual(len(args.sources), 2)
        self.assertTrue(args.featured)

    def test_add_watch_rejects_unknown_kind(self) -> None:
        with self.assertRaises(SystemExit):
            _build_parser().parse_args(
                ["add-watch", "u1", "kettle", "-k", "flash_sale"]
            )

    def test_edit_watch_channel_flags(self) -> None:
        args = _build_parser().parse_args(
            ["edit-watch", "abc", "-t", "80", "--no-email", "--in-app"]
        )
        self.assertEqual(args.target, "80")
        self.assertIs(args.email, False)
        self.assertIsNone(args.push)
        self.assertIs(args.in_app, True)

    def test_watches_state_filter(self) -> None:
        args = _build_parser().parse_args(["watches", "--state", "triggered"])
        self.assertEqual(args.state, "triggered")
        with self.assertRaises(SystemExit):
            _build_parser().parse_args(["watches", "--state", "fired"])

    def test_owner_commands(self) -> None:
        parser = _build_parser()
        self.assertTrue(parser.parse_args(["inbox", "u1", "--unread"]).unread)
        self.assertEqual(
            parser.parse_args(["delete-owner", "u1"]).owner_id, "u1"
        )
        self.assertEqual(parser.parse_args(["stats", "u1"]).command, "stats")

    def test_command_required(self) -> None:
        with self.assertRaises(SystemExit):
            _build_parser().parse_args([])


class TestArgumentHelpers(unittest.TestCase):
    """Money and source=url parsing."""

    def test_parse_price(self) -> None:
        self.assertEqual(parse_price("$49.99"), Decimal("49.99"))
        self.assertIsNone(parse_price(None))
        with self.assertRaises(SystemExit):
            parse_price("cheap")

    def test_parse_sources(self) -> None:
        self.assertEqual(
            parse_sources(["amazon=https://a/1?x=1"]),
            {"amazon": "https://a/1?x=1"},
        )
        self.assertEqual(parse_sources(None), {})
        with self.assertRaises(SystemExit):
            parse_sources(["https://a/1"])

    def test_edited_channels(self) -> None:
        current = NotificationChannels(email=True, push=False, in_app=True)
        self.assertIsNone(edited_channels(current, None, None, None))
        self.assertEqual(
            edited_channels(current, False, None, None),
            NotificationChannels(email=False, push=False, in_app=True),
        )


@patch("src.cli.runner.Console")
@patch("src.cli.runner.build_engine")
class TestScrapeCommand(unittest.TestCase):
    """``scrape <source> <url>`` prints the quote or the error."""

    def _engine(self, check: SourceCheck) -> MagicMock:
        engine = MagicMock()
        engine.test_source = AsyncMock(return_value=check)
        return engine

    def test_quote_exits_zero(self, mock_build, mock_console) -> None:
        quote = Quote(
            source="amazon",
            product_id="",
            url="https://a/1",
            price=Decimal("19.99"),
            observed_at=datetime(2026, 10, 19, tzinfo=timezone.utc),
            title="Kettle",
        )
        engine = self._engine(
            SourceCheck(source="amazon", url="https://a/1", quote=quote)
        )
        mock_build.return_value = engine

        args = _build_parser().parse_args(["scrape", "amazon", "https://a/1"])
        self.assertEqual(_dispatch(args), 0)

        engine.test_source.assert_awaited_once_with("amazon", "https://a/1")
        engine.close.assert_called_once()
        mock_console.return_value.print.assert_called_once()

    def test_error_exits_one(self, mock_build, mock_console) -> None:
        engine = self._engine(
            SourceCheck(
                source="ebay", url="https://e/1", error="page not retrieved"
            )
        )
        mock_build.return_value = engine

        code = asyncio.run(run_scrape("ebay", "https://e/1"))

        self.assertEqual(code, 1)
        engine.close.assert_called_once()
        mock_console.return_value.print.assert_not_called()


if __name__ == "__main__":
    unittest.main()
