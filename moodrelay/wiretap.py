"""
Wiretap: a structured record of what went over the relay.

Two parts:
  1. WireLog: writes one JSONL entry per user message sent upstream and per
     assistant reply committed to the store
  2. live_tap(): reads the JSONL and renders a colour-coded view for the CLI

The wire log is separate from the debug log. Failed turns never produce an
outbound entry, because nothing is committed for them.
"""

import json
import time
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"       # cyan
C_ASSISTANT = "\033[93m"  # yellow
C_MOOD = "\033[95m"       # magenta
C_TIME = "\033[90m"       # gray
C_BORDER = "\033[90m"     # gray

ROLE_COLORS = {
    "user": C_USER,
    "assistant": C_ASSISTANT,
}

ROLE_ICONS = {
    "user": "▶",
    "assistant": "◀",
}

MAX_CONTENT = 2000


class WireLog:
    """
    Structured JSONL logger for the wire.

    Format:
        {"ts": "...", "dir": "inbound|outbound", "role": "...",
         "mood": "...", "conv": "...", "len": 123, "content": "..."}
    """

    def __init__(self, log_path: str, enabled: bool = True):
        self.log_path = Path(log_path)
        self.enabled = enabled
        self._file = None
        if enabled:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1, encoding="utf-8")  # line-buffered

    def log(
        self,
        direction: str,  # "inbound" (client->upstream) or "outbound" (upstream->client)
        role: str,
        content: str,
        mood: str = "",
        conversation_id: str = "",
    ):
        """Write a wire log entry. I/O errors are logged, never raised."""
        if not self.enabled:
            return
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "role": role,
            "mood": mood,
            "conv": conversation_id[:16] if conversation_id else "",
            "len": len(content),
        }
        if len(content) <= MAX_CONTENT:
            entry["content"] = content
        else:
            entry["content"] = content[:1000] + f"\n\n[... {len(content) - MAX_CONTENT} chars truncated ...]\n\n" + content[-1000:]

        try:
            self._ensure_open()
            self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("Wire log write failed (%s): %s", self.log_path, e)

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single wire log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    role = entry.get("role", "?")
    direction = entry.get("dir", "?")
    mood = entry.get("mood", "")
    conv = entry.get("conv", "")
    content = entry.get("content", "")
    char_len = entry.get("len", 0)

    role_color = ROLE_COLORS.get(role, C_RESET)
    icon = ROLE_ICONS.get(role, "?")
    arrow = f"{C_DIM}──▶{C_RESET}" if direction == "inbound" else f"{C_DIM}◀──{C_RESET}"

    lines = []
    header = f"  {C_TIME}{time_str}{C_RESET} {arrow} {role_color}{C_BOLD}{icon} {role.upper()}{C_RESET}"
    if mood:
        header += f"  {C_MOOD}[{mood}]{C_RESET}"
    header += f"  {C_DIM}({char_len} chars){C_RESET}"
    if conv:
        header += f"  {C_DIM}conv:{conv}{C_RESET}"
    lines.append(header)

    if content:
        display_content = content
        if len(display_content) > 500:
            display_content = display_content[:500] + f"\n      {C_DIM}[... truncated]{C_RESET}"
        for cline in display_content.split("\n")[:15]:
            lines.append(f"      {cline}")

    lines.append(f"  {C_BORDER}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def _print_line(line: str, role_filter: str | None, raw: bool):
    line = line.strip()
    if not line:
        return
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return
    if role_filter and entry.get("role") != role_filter:
        return
    print(_format_entry(entry, raw=raw))


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    raw: bool = False,
):
    """
    Tail of the wire log.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: If True, keep watching for new entries (tail -f behavior).
        last_n: Show this many recent entries before following.
        role_filter: Only show entries matching this role.
        raw: Output raw JSONL instead of formatted.
    """
    if log_path is None:
        from moodrelay.config import get_config
        log_path = get_config().get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Start the relay first: moodrelay serve")
        return

    if not raw:
        print(f"  ☎  Tapping into {wire_path}")
        print(f"  {C_BORDER}{'═' * 60}{C_RESET}")

    with open(wire_path, encoding="utf-8") as f:
        all_lines = f.readlines()
    for line in all_lines[max(0, len(all_lines) - last_n):]:
        _print_line(line, role_filter, raw)

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening for new traffic... Ctrl+C to hang up]{C_RESET}\n")

    try:
        with open(wire_path, encoding="utf-8") as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                _print_line(line, role_filter, raw)
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[line disconnected]{C_RESET}")
