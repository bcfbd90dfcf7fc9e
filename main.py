import asyncio
import argparse
import sys
from src.mcpcp.cli import DEFAULT_CONFIG_PATH, cmd_check, cmd_init
from src.mcpcp.context_proxy import ContextProxy
from src.mcpcp.errors import ConfigError


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="MCP context proxy: compression and PII masking for MCP tools")
    sub = parser.add_subparsers(dest="command", required=True)

    # start
    start = sub.add_parser("start", help="Start the proxy server")
    start.add_argument("--config", type=str, default=str(DEFAULT_CONFIG_PATH), help="Path to YAML or JSON config")
    start.add_argument("--transport", choices=["stdio", "sse"], default="stdio")
    start.add_argument("--host", type=str, default="127.0.0.1")
    start.add_argument("--port", type=int, default=3000)
    start.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO"
    )

    # init
    init = sub.add_parser("init", help="Write an example config file")
    init.add_argument("path", nargs="?", default=str(DEFAULT_CONFIG_PATH))
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    # check
    check = sub.add_parser("check", help="Validate a config file and print a summary")
    check.add_argument("--config", type=str, default=str(DEFAULT_CONFIG_PATH))

    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    if args.command == "start":
        try:
            proxy = ContextProxy.from_file(
                args.config,
                transport=args.transport,
                host=args.host,
                port=args.port,
                log_level=args.log_level,
            )
        except ConfigError as e:
            print(f"❌ {e}", file=sys.stderr)
            return 1
        asyncio.run(proxy.run())

    elif args.command == "init":
        print(cmd_init(args.path, force=args.force))

    elif args.command == "check":
        try:
            print(cmd_check(args.config))
        except ConfigError as e:
            print(f"❌ {e}", file=sys.stderr)
            return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
