import argparse
import sys

import httpx
import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from xrpl import CryptoAlgorithm
from xrpl.wallet import Wallet

from txrelay.config import cfg

STATE_COLORS = {
    "CONFIRMED": "green",
    "FAILED": "red",
    "DIAGNOSING": "yellow",
    "BROADCASTING": "cyan",
    "SIGNED": "bright_black",
}


def serve(args) -> None:
    server = cfg["server"]
    uvicorn.run(
        "txrelay.app:app",
        host=args.host or server.get("host", "0.0.0.0"),
        port=args.port or server.get("port", 8000),
        lifespan="on",
    )


def status(args) -> int:
    try:
        r = httpx.get(f"{args.url.rstrip('/')}/state/summary", timeout=5.0)
        r.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Could not reach {args.url}: {e}", file=sys.stderr)
        return 1
    stats = r.json()

    console = Console()
    table = Table(
        title=f"[bold underline bright_white]Submissions at {args.url}[/]",
        show_header=True,
        header_style="bold",
        expand=False,
    )
    table.add_column("State", no_wrap=True)
    table.add_column("Count", justify="right")
    for state, count in sorted(stats.get("by_state", {}).items()):
        table.add_row(state, str(count), style=STATE_COLORS.get(state))
    console.print(table)

    if errors := stats.get("by_error_kind"):
        grid = Table.grid(padding=1)
        for kind, count in sorted(errors.items()):
            grid.add_row(f"[red]{kind}[/]", str(count))
        console.print(Panel(grid, title="Errors", expand=False))

    latency = stats.get("mean_latency")
    console.print(
        f"tracked: {stats.get('total_tracked', 0)}  "
        f"mean latency: {f'{latency:.3f}s' if latency is not None else '-'}"
    )
    return 0


def keygen(args) -> int:
    algorithm = CryptoAlgorithm.SECP256K1 if args.secp256k1 else CryptoAlgorithm.ED25519
    w = Wallet.create(algorithm=algorithm)
    print(f"seed:       {w.seed}")
    print(f"public key: {w.public_key}")
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="txrelay")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the relay HTTP service")
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.set_defaults(func=serve)

    p = sub.add_parser("status", help="Show submission counts from a running relay")
    p.add_argument("-u", "--url", default=f"http://127.0.0.1:{cfg['server'].get('port', 8000)}")
    p.set_defaults(func=status)

    p = sub.add_parser("keygen", help="Generate a local signing key")
    p.add_argument("--secp256k1", action="store_true", help="Use secp256k1 instead of ed25519")
    p.set_defaults(func=keygen)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
