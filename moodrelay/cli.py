#!/usr/bin/env python3
"""
MoodRelay CLI.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, dial     Start the relay server
    ring            health, ping    Ping a running instance
    dump            export          Export conversations to JSON
    tap             log, tail       Watch the wire log
    tone            banner          Print the banner
"""

import argparse
import json

from moodrelay import __version__

BANNER = r"""
    ╔══════════════════════════════════════════╗
    ║                                          ║
    ║   ☺ ☻ ☹   M O O D R E L A Y   ☹ ☻ ☺      ║
    ║                                          ║
    ║   How are you feeling today?   v""" + __version__ + r"""   ║
    ║                                          ║
    ╚══════════════════════════════════════════╝
"""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the relay server."""
    import uvicorn
    from moodrelay.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]
    upstream = cfg.get("upstream", {})

    print(BANNER)
    print(f"  Listening on {host}:{port}")
    print(f"  Upstream: {upstream.get('url', '')} ({upstream.get('model', '')})")
    if not upstream.get("api_key"):
        print("  ⚠  DEEPSEEK_API_KEY is not set, chat requests will fail")
    print()

    uvicorn.run(
        "moodrelay.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_ring(args):
    """Ping a running instance."""
    import httpx

    url = (args.url or "http://localhost:3000").rstrip("/")
    try:
        resp = httpx.get(f"{url}/api/health", timeout=5)
    except httpx.ConnectError:
        print(f"  ✗  Dead line, nothing at {url}")
        return 1
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")
        return 1

    if resp.status_code != 200:
        print(f"  ✗  No answer, got HTTP {resp.status_code}")
        return 1

    data = resp.json()
    storage = data.get("storage", {})
    print(f"  ☎  {url} is UP (v{data.get('version', '?')}, {data.get('environment', '?')})")
    print(f"  ⏱  Uptime: {data.get('uptime', 0):.0f}s")
    print(f"  📼 Conversations: {data.get('conversations', 0)}")
    print(f"  💬 Messages: {storage.get('messages', 0)} "
          f"(user: {storage.get('user_messages', 0)}, assistant: {storage.get('assistant_messages', 0)})")
    print(f"  🔑 Upstream key: {'configured' if data.get('upstreamConfigured') else 'MISSING'}")
    return 0


def cmd_dump(args):
    """Export conversations to JSON, from a running instance or a snapshot file."""
    if args.snapshot:
        from moodrelay.storage.conversation_store import ConversationStore
        store = ConversationStore(args.snapshot)
        data = [c.to_dict() for c in store.list()]
        source = args.snapshot
    else:
        import httpx
        url = (args.url or "http://localhost:3000").rstrip("/")
        try:
            resp = httpx.get(f"{url}/api/conversations", timeout=10)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            print(f"  ✗  Cannot fetch conversations from {url}: {e}")
            return 1
        data = resp.json()
        source = url

    indent = 2 if args.pretty else None
    with open(args.output, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)

    print(f"  📦 Dumped {len(data)} conversations from {source} to {args.output}")
    return 0


def cmd_tap(args):
    """Watch the wire log."""
    from moodrelay.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        raw=args.raw,
    )


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moodrelay",
        description="MoodRelay: mood-aware chat relay.",
        epilog="Run 'moodrelay <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"moodrelay {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "dial"], "Start the relay server", cmd_serve, setup_serve)

    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help="Relay URL (default: http://localhost:3000)")

    _add_command(sub, ["ring", "health", "ping"], "Ping a running instance", cmd_ring, setup_ring)

    def setup_dump(p):
        p.add_argument("--output", "-o", default="conversations_export.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
        p.add_argument("--url", "-u", default=None, help="Relay URL (default: http://localhost:3000)")
        p.add_argument("--snapshot", "-s", default=None, help="Read a snapshot file instead of a running relay")

    _add_command(sub, ["dump", "export"], "Export conversations to JSON", cmd_dump, setup_dump)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--role", "-r", choices=["user", "assistant"], default=None, help="Filter by role")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"], "Watch the wire log", cmd_tap, setup_tap)

    _add_command(sub, ["tone", "banner"], "Print the banner", cmd_tone)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        cmd_tone(args)
        parser.print_help()
        return 0
    return args.func(args) or 0


if __name__ == "__main__":
    raise SystemExit(main())
