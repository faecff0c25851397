import asyncio
import io
import json

import pytest

from qci_cli.progress import make_json_progress_handler, make_text_progress_handler


class TestJsonProgress:
    def test_writes_one_line_per_event(self):
        out = io.StringIO()
        handler = make_json_progress_handler(out)
        handler({"event": "submitted", "tx_id": "0xabc"})
        handler({"event": "confirmed", "tx_id": "0xabc", "block_number": 5})
        lines = out.getvalue().splitlines()
        assert [json.loads(line)["event"] for line in lines] == ["submitted", "confirmed"]


class TestTextProgress:
    """Spinner while waiting, one final line per transaction."""

    def test_confirmed_without_event_loop(self):
        out = io.StringIO()
        handler = make_text_progress_handler(out)
        handler({"event": "submitted", "tx_id": "0xabc"})
        handler({"event": "confirmed", "tx_id": "0xabc", "block_number": 5})
        assert "Transaction 0xabc ✔ CONFIRMED in block 5" in out.getvalue()
        assert "\x1b[" not in out.getvalue()

    def test_failed_and_skipped(self):
        out = io.StringIO()
        handler = make_text_progress_handler(out)
        handler({"event": "failed", "tx_id": "0x1", "reason": "timeout"})
        handler({"event": "skipped", "tx_id": "0x2", "reason": "no_wait_for_confirmation"})
        text = out.getvalue()
        assert "✖ FAILED (timeout)" in text
        assert "Skipped waiting for 0x2: no_wait_for_confirmation" in text

    def test_new_qci_and_other_events(self):
        out = io.StringIO()
        handler = make_text_progress_handler(out)
        handler({"event": "new_qci", "qci_number": 240, "title": "New vault", "chain": "Linea", "author": "0x11"})
        handler({"event": "custom", "message": "hello"})
        text = out.getvalue()
        assert "+ QCI-240 New vault (Linea) by 0x11" in text
        assert "ℹ hello" in text

    @pytest.mark.asyncio
    async def test_spinner_runs_until_confirmed(self):
        out = io.StringIO()
        handler = make_text_progress_handler(out)
        handler({"event": "submitted", "tx_id": "0xabc"})
        handler({"event": "poll", "tx_id": "0xabc", "status": "pending"})
        await asyncio.sleep(0.15)
        handler({"event": "confirmed", "tx_id": "0xabc"})
        await asyncio.sleep(0)
        text = out.getvalue()
        assert "Waiting for tx 0xabc | status: pending" in text
        assert text.endswith("\n")
