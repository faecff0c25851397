"""
Human readable output for the QCI CLI.

Formats the dicts and lists returned by the CLI commands, choosing a
rendering per field from its name (timestamps, hashes, addresses, statuses).
"""

import os
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List

# Values above this are millisecond timestamps
MS_TIMESTAMP_THRESHOLD = 10**11


class QCIJSONFormatter:
    """Formats QCI CLI results in a human-readable way."""

    def __init__(self, use_color: bool | None = None):
        self.timestamp_patterns = [
            r".*_at$",
            r"^last_updated$",
            r".*timestamp.*",
            r"^implementation_date$",
            r"^block_time$",
        ]

        self.hash_patterns = [
            r".*_hash$",
            r"^tx_id$",
            r"^status_id$",
        ]

        self.address_patterns = [
            r".*address.*",
            r"^signer$",
        ]

        self.status_patterns = [
            r"^status$",
            r"^status_name$",
        ]

        self.long_text_keys = ["content", "body", "markdown"]

        if use_color is None:
            no_color = os.environ.get("QCI_CLI_NO_COLOR")
            try:
                isatty = sys.stdout.isatty()
            except (AttributeError, ValueError):
                isatty = False
            self.use_color = (not no_color) and isatty
        else:
            self.use_color = bool(use_color)
        self.colors = {
            "ok": "\x1b[32m" if self.use_color else "",
            "warn": "\x1b[33m" if self.use_color else "",
            "err": "\x1b[31m" if self.use_color else "",
            "info": "\x1b[36m" if self.use_color else "",
            "dim": "\x1b[2m" if self.use_color else "",
            "bold": "\x1b[1m" if self.use_color else "",
            "reset": "\x1b[0m" if self.use_color else "",
        }

    def format_response(self, data: Any, indent: int = 0) -> str:
        """Format a response with appropriate human-readable formatting."""
        if isinstance(data, dict):
            return self._format_dict(data, indent)
        elif isinstance(data, list):
            return self._format_list(data, indent)
        else:
            return self._format_value("", data, indent)

    def _format_dict(self, data: Dict[str, Any], indent: int = 0) -> str:
        if not data:
            return "{}"

        lines = []
        prefix = "  " * indent
        sorted_keys = self._sort_keys(list(data.keys()))

        if indent == 0 and len(sorted_keys) > 1:
            lines.append("")

        for key in sorted_keys:
            value = data[key]
            formatted_key = self._format_key_name(key)

            if isinstance(value, (dict, list)) and value:
                if lines and lines[-1] != "":
                    lines.append("")
                header = formatted_key
                if indent == 0 and self.use_color:
                    header = f"{self.colors['bold']}{formatted_key}{self.colors['reset']}"
                lines.append(f"{prefix}{header}:")
                lines.append(self._format_value(key, value, indent + 1))
            elif isinstance(value, str) and key.lower() in self.long_text_keys and "\n" in value:
                lines.append(f"{prefix}{formatted_key}:")
                lines.extend(f"{prefix}  {line}" for line in value.splitlines())
            else:
                lines.append(f"{prefix}{formatted_key}: {self._format_value(key, value, indent + 1)}")

        if indent == 0:
            lines.append("")
        return "\n".join(lines)

    def _format_list(self, data: List[Any], indent: int = 0) -> str:
        if not data:
            return "\nNo results."

        lines = []
        prefix = "  " * indent
        for i, item in enumerate(data):
            idx = f"[{i}]"
            if self.use_color:
                idx = f"{self.colors['dim']}{idx}{self.colors['reset']}"
            if isinstance(item, dict):
                lines.append(f"{prefix}{idx}:")
                lines.append(self._format_dict(item, indent + 1))
            else:
                lines.append(f"{prefix}{idx}: {self._format_value('', item, indent)}")
        return "\n".join(lines)

    def _format_value(self, key: str, value: Any, indent: int = 0) -> str:
        if value is None:
            return "null"

        key_lower = key.lower()

        if isinstance(value, dict):
            return self._format_dict(value, indent)
        elif isinstance(value, list):
            return self._format_list(value, indent)

        if isinstance(value, bool):
            if self.use_color:
                C = self.colors
                return f"{C['ok']}✓{C['reset']}" if value else f"{C['err']}✗{C['reset']}"
            return "✓" if value else "✗"

        if self._matches_pattern(key_lower, self.status_patterns) and isinstance(value, str):
            return self._format_status(value)

        if self._matches_pattern(key_lower, self.timestamp_patterns) and isinstance(value, (int, float)):
            return self._format_timestamp(value)

        if self._matches_pattern(key_lower, self.hash_patterns) and isinstance(value, str):
            return self._format_hex(value)

        if self._matches_pattern(key_lower, self.address_patterns) and isinstance(value, str):
            return value

        if isinstance(value, int) and abs(value) >= 1000 and not key_lower.endswith("number"):
            return f"{value:,}"
        if isinstance(value, float):
            return f"{value:.6f}".rstrip("0").rstrip(".")

        if isinstance(value, str) and len(value) > 100 and key_lower not in self.long_text_keys:
            return f"{value[:50]}...{value[-47:]}"

        return str(value)

    def _format_status(self, value: str) -> str:
        if not self.use_color:
            return value
        C = self.colors
        lowered = value.lower()
        if lowered in ("confirmed", "posted to snapshot"):
            return f"{C['ok']}{value}{C['reset']}"
        if lowered in ("failed", "error", "archived"):
            return f"{C['err']}{value}{C['reset']}"
        if lowered in ("ready for snapshot", "submitted"):
            return f"{C['warn']}{value}{C['reset']}"
        return f"{C['info']}{value}{C['reset']}"

    def _format_timestamp(self, value: int | float) -> str:
        if value <= 0:
            return "None"
        seconds = value / 1000 if value > MS_TIMESTAMP_THRESHOLD else value
        try:
            human = datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        except (ValueError, OSError, OverflowError):
            return str(value)
        if self.use_color:
            return f"{int(value)} {self.colors['dim']}({human}){self.colors['reset']}"
        return f"{int(value)} ({human})"

    def _format_hex(self, value: str) -> str:
        if len(value) > 20:
            return f"{value[:10]}...{value[-8:]}"
        return value

    def _format_key_name(self, key: str) -> str:
        formatted = key.replace("_", " ").title()
        replacements = {
            "Qci": "QCI",
            "Id": "ID",
            "Ipfs": "IPFS",
            "Url": "URL",
            "Api": "API",
            "Rpc": "RPC",
            "Tx": "TX",
        }
        for old, new in replacements.items():
            formatted = re.sub(rf"\b{old}\b", new, formatted)
        return formatted

    def _sort_keys(self, keys: List[str]) -> List[str]:
        """Identity and status first, long bodies last, everything else in insertion order."""
        priority = ["qci_number", "title", "status", "chain", "author", "tx_hash"]
        first = [k for k in priority if k in keys]
        last = [k for k in keys if k in self.long_text_keys]
        middle = [k for k in keys if k not in first and k not in last]
        return first + middle + last

    def _matches_pattern(self, text: str, patterns: List[str]) -> bool:
        return any(re.match(pattern, text, re.IGNORECASE) for pattern in patterns)


def format_qci_response(data: Any, use_color: bool | None = None) -> str:
    """Convenience function to format a CLI result.
    If use_color is None, auto-detect TTY. Pass True/False to force behavior.
    """
    return QCIJSONFormatter(use_color=use_color).format_response(data)
