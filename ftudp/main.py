# ftudp/main.py
import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from .config import SERVER_ROOT, ClientConfig, ServerConfig, load_users
from .ftp_client import FTPClient
from .ftp_server import main as server_main
from .logutil import setup_logging
from .protocol import DEFAULT_PORT, FTUDPError

logger = logging.getLogger("ftudp")


def cmd_serve(args: argparse.Namespace) -> int:
    env = ServerConfig.from_env()
    config = ServerConfig(
        host=args.host or env.host,
        port=args.port if args.port is not None else env.port,
        root=args.root or env.root,
        users=load_users(args.users) if args.users else env.users,
        session_idle=env.session_idle,
        transfer_idle=env.transfer_idle,
        pace_ms=env.pace_ms,
        loss_rate=args.loss_rate if args.loss_rate is not None else env.loss_rate,
    )
    try:
        asyncio.run(server_main(config))
    except KeyboardInterrupt:
        logger.info("server stopped")
    return 0


def _progress_printer(payload):
    print(f"\r{payload['file_name']}: {payload['progress']}%", end="", file=sys.stderr, flush=True)


async def _run_client(args: argparse.Namespace):
    config = ClientConfig.from_env()
    if args.timeout_ms is not None:
        config.timeout_ms = args.timeout_ms
    if args.loss_rate is not None:
        config.loss_rate = args.loss_rate
    client = FTPClient(config)
    if not args.quiet:
        client.on("upload_progress", _progress_printer)
        client.on("download_progress", _progress_printer)

    await client.connect(args.host, args.port)
    try:
        await client.authenticate(args.user, args.password)
        if args.cd:
            await client.change_directory(args.cd)

        if args.cmd == "ls":
            entries = await client.list_directory()
            result = {"cwd": client.current_dir, "entries": [e.__dict__ for e in entries]}
        elif args.cmd == "put":
            size = await client.put_file(args.file, args.remote)
            result = {"uploaded": args.remote or args.file, "bytes": size}
        elif args.cmd == "get":
            data = await client.download(args.remote, args.out or args.remote)
            result = {"downloaded": args.remote, "path": args.out or args.remote, "bytes": len(data)}
        elif args.cmd == "mkdir":
            await client.make_directory(args.name)
            result = {"created": args.name}
        else:
            await client.remove_directory(args.name)
            result = {"removed": args.name}
        result["metrics"] = client.metrics.report()
        return result
    finally:
        client.disconnect()


def cmd_client(args: argparse.Namespace) -> int:
    try:
        result = asyncio.run(_run_client(args))
    except FTUDPError as e:
        logger.error("%s failed: %s", args.cmd, e)
        return 1
    if not args.quiet:
        print(file=sys.stderr)
    print(json.dumps(result, indent=2) if args.json else result)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ftudp", description="FTP-like file transfer over UDP.")
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="run the server")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--root", default=None, help=f"server root directory (default {SERVER_ROOT})")
    serve.add_argument("--users", default=None, help="JSON file of username -> password")
    serve.add_argument("--loss-rate", type=float, default=None, help="simulate outbound packet loss")
    serve.set_defaults(func=cmd_serve)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--host", default="127.0.0.1")
        x.add_argument("--port", type=int, default=DEFAULT_PORT)
        x.add_argument("--user", required=True)
        x.add_argument("--password", required=True)
        x.add_argument("--cd", default=None, help="change to this remote directory first")
        x.add_argument("--timeout-ms", type=int, default=None)
        x.add_argument("--loss-rate", type=float, default=None)
        x.add_argument("--json", action="store_true")
        x.add_argument("--quiet", action="store_true", help="no progress output")
        x.set_defaults(func=cmd_client)

    ls = sub.add_parser("ls", help="list the remote directory")
    add_common(ls)

    put = sub.add_parser("put", help="upload a file")
    add_common(put)
    put.add_argument("file")
    put.add_argument("remote", nargs="?", default=None)

    get = sub.add_parser("get", help="download a file")
    add_common(get)
    get.add_argument("remote")
    get.add_argument("--out", default=None)

    for name in ("mkdir", "rmdir"):
        x = sub.add_parser(name, help=f"{name} on the server")
        add_common(x)
        x.add_argument("name")

    return p


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
