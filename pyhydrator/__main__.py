# pyHydrator Module - Command Line
# -*- coding: utf-8 -*-
"""
 Python module that hydrates dashboard widgets with telemetry totals

 Command Line:
    python -m pyhydrator fetch -domain energy -start 2024-01-01T00:00:00Z -end 2024-01-31T23:59:59Z
    python -m pyhydrator serve
    python -m pyhydrator version

 Credentials are read from HY_CUSTOMER_ID, HY_CLIENT_ID and HY_CLIENT_SECRET
 (environment or .env) unless given on the command line.
"""

import argparse
import asyncio
import json
import sys

# Modules
from pyhydrator import version, set_debug
from pyhydrator.const import DEFAULT_DOMAIN

# Setup parser and groups
p = argparse.ArgumentParser(prog="PyHydrator", description=f"PyHydrator Module v{version}")
subparsers = p.add_subparsers(dest="command", title='commands (run <command> -h to see usage information)',
                              required=True)

fetch_args = subparsers.add_parser("fetch", help='Hydrate one domain for a period and print the totals')
fetch_args.add_argument("-domain", type=str, default=DEFAULT_DOMAIN, help=f"Domain [Default={DEFAULT_DOMAIN}]")
fetch_args.add_argument("-start", type=str, required=True, help="Period start (ISO-8601)")
fetch_args.add_argument("-end", type=str, required=True, help="Period end (ISO-8601)")
fetch_args.add_argument("-granularity", type=str, default=None,
                        help="hour, day or month [Default=inferred from the period]")
fetch_args.add_argument("-customer", type=str, default=None, help="Ingestion customer id")
fetch_args.add_argument("-client", type=str, default=None, help="Ingestion client id")
fetch_args.add_argument("-secret", type=str, default=None, help="Ingestion client secret")
fetch_args.add_argument("-format", type=str, default="text", help="Output format: text, json")

serve_args = subparsers.add_parser("serve", help='Run the orchestrator server (REST + WebSocket)')
serve_args.add_argument("-host", type=str, default=None, help="Bind address [Default=HY_BIND_ADDRESS]")
serve_args.add_argument("-port", type=int, default=None, help="Port [Default=HY_PORT]")

version_args = subparsers.add_parser("version", help='Print version information')

# Add a global debug flag
p.add_argument("-debug", action="store_true", default=False, help="Enable debug output")


async def fetch(args) -> int:
    from pyhydrator import Orchestrator, Settings, HydratorError, Period

    overrides = {k: v for k, v in (("customer_id", args.customer), ("client_id", args.client),
                                   ("client_secret", args.secret)) if v}
    settings = Settings(**overrides)
    orchestrator = Orchestrator(settings)
    await orchestrator.init()
    try:
        period = Period.create(args.start, args.end, args.granularity)
        items = await orchestrator.hydrate_domain(args.domain, period)
    except (HydratorError, ValueError) as exc:
        print(f"ERROR: {exc}")
        return 1
    finally:
        await orchestrator.destroy()
    if args.format == 'json':
        print(json.dumps([item.model_dump(mode="json") for item in items], indent=2))
    else:
        print(f"pyHydrator [{version}] - {args.domain} totals {period.start_iso} to {period.end_iso} "
              f"({period.granularity})\n")
        for item in items:
            print("  {:<36}{:>14.2f}".format(item.label[:35], item.value))
        print(f"\n  {len(items)} devices, total {sum(item.value for item in items):.2f}")
    return 0


if __name__ == '__main__':
    if len(sys.argv) == 1:
        p.print_help(sys.stderr)
        sys.exit(1)

    # parse args
    args = p.parse_args()
    command = args.command

    # Set Debug Mode
    if args.debug:
        set_debug(True)

    # Hydrate a domain
    if command == 'fetch':
        sys.exit(asyncio.run(fetch(args)))

    # Run server
    elif command == 'serve':
        import uvicorn
        from pyhydrator.server.config import settings

        uvicorn.run("pyhydrator.server.main:app",
                    host=args.host or settings.server_host,
                    port=args.port or settings.server_port,
                    log_level="debug" if args.debug or settings.debug else "info")

    # Print Version
    elif command == 'version':
        print("pyHydrator [%s]" % version)
    # Print Usage
    else:
        p.print_help()
