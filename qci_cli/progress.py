"""
Progress handler factories for the QCI CLI.

- make_json_progress_handler(): writes each event as a JSON line to stdout.
- make_text_progress_handler(): renders a spinner with elapsed time on stderr
  while QCIRegistryClient waits for a transaction receipt.
"""
from __future__ import annotations

import asyncio
import json
import sys
import time
from typing import Any, Callable, Dict

SPINNER = ["⠋", "⠙", "⠚", "⠞", "⠖", "⠦", "⠴", "⠲", "⠳", "⠓"]


def make_json_progress_handler(stream=None) -> Callable[[Dict[str, Any]], None]:
    """Return a JSONL writer for progress events (stdout by default)."""

    def _json_progress(ev: Dict[str, Any]) -> None:
        out = stream or sys.stdout
        out.write(json.dumps(ev, default=str) + "\n")
        out.flush()

    return _json_progress


def _colors(is_tty: bool) -> Dict[str, str]:
    return {
        "ok": "\x1b[32m" if is_tty else "",
        "err": "\x1b[31m" if is_tty else "",
        "info": "\x1b[36m" if is_tty else "",
        "dim": "\x1b[2m" if is_tty else "",
        "bold": "\x1b[1m" if is_tty else "",
        "reset": "\x1b[0m" if is_tty else "",
    }


def make_text_progress_handler(stream=None) -> Callable[[Dict[str, Any]], None]:
    """Return a text progress handler (stderr by default).

    State is kept per tx_id:
    - submitted, poll: update status and make sure a ticker task is running
    - confirmed, failed, skipped: stop the ticker and print a final line
    - new_qci: print one line per created QCI seen by `qci watch`
    """
    out = stream or sys.stderr
    try:
        is_tty = out.isatty()
    except (AttributeError, ValueError):
        is_tty = False
    C = _colors(is_tty)
    state: Dict[str, Dict[str, Any]] = {}

    def elapsed_str(st: Dict[str, Any]) -> str:
        elapsed = int(time.time() - st["start"])
        return f"{elapsed // 60:02d}:{elapsed % 60:02d}"

    def write_line(st: Dict[str, Any], line: str, final: bool = False) -> None:
        last_len = st.get("last_len", 0)
        if final:
            pad = " " * max(0, last_len - len(line))
            out.write("\r" + line + pad + "\n")
            st["last_len"] = 0
        else:
            out.write("\r" + line)
            st["last_len"] = len(line)
        out.flush()

    async def ticker(st: Dict[str, Any], txid: str):
        while not st["stopped"]:
            spin = SPINNER[st["spin_idx"] % len(SPINNER)]
            st["spin_idx"] += 1
            line = (
                f"{C['info']}{spin}{C['reset']} Waiting for tx {C['bold']}{txid}{C['reset']}"
                f" | status: {C['info']}{st['status']}{C['reset']}"
                f" | elapsed: {C['dim']}{elapsed_str(st)}{C['reset']}"
            )
            write_line(st, line)
            await asyncio.sleep(0.1)

    def stop(st: Dict[str, Any]) -> None:
        st["stopped"] = True
        task = st.get("task")
        if task is not None and not task.done():
            task.cancel()

    def ensure_ticker(st: Dict[str, Any], txid: str) -> None:
        if st["task"] is None or st["task"].done():
            try:
                st["task"] = asyncio.get_running_loop().create_task(ticker(st, txid))
            except RuntimeError:
                pass

    def handler(ev: Dict[str, Any]) -> None:
        event = ev.get("event")
        if event == "new_qci":
            write_line(
                {},
                f"{C['ok']}+{C['reset']} QCI-{ev.get('qci_number')} {C['bold']}{ev.get('title')}{C['reset']}"
                f" ({ev.get('chain')}) by {ev.get('author')}",
                final=True,
            )
            return

        txid = ev.get("tx_id") or "tx"
        st = state.get(txid)
        if st is None:
            st = state[txid] = {"start": time.time(), "status": "waiting", "stopped": False, "spin_idx": 0, "task": None}

        if event == "submitted":
            st["status"] = "submitted"
            ensure_ticker(st, txid)
        elif event == "poll":
            st["status"] = ev.get("status") or "pending"
            ensure_ticker(st, txid)
        elif event in ("confirmed", "failed"):
            stop(st)
            if event == "confirmed":
                outcome = f"{C['ok']}✔ CONFIRMED{C['reset']}"
                block = ev.get("block_number")
                if block is not None:
                    outcome += f" in block {block}"
            else:
                reason = ev.get("reason")
                outcome = f"{C['err']}✖ FAILED{C['reset']}" + (f" ({reason})" if reason else "")
            write_line(
                st,
                f"Transaction {C['bold']}{txid}{C['reset']} {outcome} | total time: {C['dim']}{elapsed_str(st)}{C['reset']}",
                final=True,
            )
            state.pop(txid, None)
        elif event == "skipped":
            stop(st)
            write_line(st, f"⟲ Skipped waiting for {txid}: {ev.get('reason')}", final=True)
            state.pop(txid, None)
        else:
            message = ev.get("message", f"Event: {event}")
            write_line(st, f"{C['info']}ℹ{C['reset']} {message}", final=True)

    return handler
