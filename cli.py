import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone

from config import get_settings, setup_logging
from models import LIMIT_SLOTS, ServiceKind, Snapshot, UsageLimit, encode_snapshot
from shared_store import SharedStore

_SLOT_LABELS = {
    "session_limit": "Session",
    "weekly_limit": "Weekly",
    "code_review_limit": "Code Review",
}


def _bar(percent: float, width: int = 20) -> str:
    filled = int(percent / 100 * width)
    return "[" + "█" * filled + "░" * (width - filled) + "]"


def _fmt_reset(ts: datetime) -> str:
    delta = ts - datetime.now(timezone.utc)
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return "now"
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    if days:
        return f"in {days}d {hours}h"
    if hours:
        return f"in {hours}h {rem // 60}m"
    return f"in {rem // 60}m"


def _limit_lines(label: str, limit: UsageLimit) -> list[str]:
    lines = [f"  {label}: {_bar(limit.percentage)} {limit.percentage:.0f}% ({limit.status.value})"]
    lines.append(f"    {limit.used:g}/{limit.total:g} used")
    if limit.reset_time:
        lines.append(f"    Resets {_fmt_reset(limit.reset_time)}")
    return lines


def format_text(metrics: Snapshot) -> str:
    lines = []
    for kind in sorted(metrics, key=lambda k: k.sort_rank):
        m = metrics[kind]
        lines.append(f"▸ {kind.display_name}")
        if not m.has_data:
            lines.append("  No rate limit data")
        for slot in LIMIT_SLOTS:
            limit = getattr(m, slot)
            if limit is not None:
                lines.extend(_limit_lines(_SLOT_LABELS[slot], limit))
        lines.append("")
    return "\n".join(lines)


def filter_metrics(metrics: Snapshot, provider: str | None) -> Snapshot:
    if not provider:
        return metrics
    needle = provider.lower()
    return {
        k: m for k, m in metrics.items()
        if needle in k.value or needle in k.display_name.lower()
    }


def _print(metrics: Snapshot, as_json: bool):
    if as_json:
        print(json.dumps(encode_snapshot(metrics), indent=2, sort_keys=True))
    else:
        print(format_text(metrics))


def cmd_usage(args: argparse.Namespace) -> int:
    settings = get_settings()
    metrics = filter_metrics(SharedStore(settings.shared_path).load_metrics(), args.provider)
    if not metrics:
        if args.json:
            print(json.dumps({"error": "No cached metrics found. Run `quotamon refresh` or `quotamon serve` first."}))
        else:
            print("No cached metrics found.")
            print("Run `quotamon refresh` or `quotamon serve` to fetch usage data first.")
        return 0
    _print(metrics, args.json)
    return 0


def cmd_refresh(args: argparse.Namespace) -> int:
    from manager import build_manager

    manager = build_manager()
    metrics = asyncio.run(manager.refresh_all())
    for kind, message in manager.errors.items():
        print(f"{kind.display_name}: {message}", file=sys.stderr)
    _print(filter_metrics(metrics, args.provider), args.json)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run("app:app", host=args.host or settings.host, port=args.port or settings.port)
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="quotamon",
        description="Track AI coding assistant usage limits.",
    )
    sub = parser.add_subparsers(dest="command")

    providers = ", ".join(k.value for k in ServiceKind.ordered())
    for name, func, help_text in (
        ("usage", cmd_usage, "Show the last cached usage snapshot"),
        ("refresh", cmd_refresh, "Fetch usage from every configured provider now"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("-j", "--json", action="store_true", help="Output as JSON")
        p.add_argument("-p", "--provider", help=f"Filter by provider ({providers})")
        p.set_defaults(func=func)

    serve = sub.add_parser("serve", help="Run the local HTTP API with periodic refresh")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", type=int, help="Port")
    serve.set_defaults(func=cmd_serve)

    argv = sys.argv[1:] if argv is None else list(argv)
    # `quotamon -j` means `quotamon usage -j`
    if not argv or (argv[0] not in sub.choices and argv[0] not in ("-h", "--help")):
        argv = ["usage", *argv]
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
