"""
Command-line front end for backend locations.

Resolves location strings and runs simple operations against the resulting
backend, which is handy for checking credentials, options and connectivity.

Usage:
    backend-location locate s3:s3.amazonaws.com/bucket/repo
    backend-location -o sftp.command="ssh -p 2222 host -s sftp" ls sftp:host:/srv/repo snapshots
    backend-location --limit-download 1024 cat rest:https://user:pw@host/ config

Credentials may also be given in a ``.env`` file in the working directory.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TYPE_CHECKING

from dotenv import find_dotenv, load_dotenv

from backend_location import (
    FileType,
    Handle,
    Limits,
    LocationError,
    Options,
    StorageError,
    TransportOptions,
    create_backend,
    list_options,
    open_backend,
    parse_location,
    resolve_config,
    strip_password,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = ["CLIApp", "build_parser", "main"]

logger = logging.getLogger(__name__)

FILE_TYPES = [t.value for t in FileType]


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="backend-location",
        description="Resolve repository locations and access their backends",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s locate /srv/repo                       Show how a location is resolved
  %(prog)s init local:/srv/repo                   Create a new repository
  %(prog)s ls s3:s3.amazonaws.com/bucket keys     List key files
  %(prog)s cat rest:http://host:8000/ config      Print the config file
  %(prog)s options                                List all backend options
        """,
    )
    parser.add_argument(
        "-o", "--option",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="set extended option (scheme.key=value), can be given multiple times",
    )
    parser.add_argument(
        "--limit-upload",
        type=int,
        default=0,
        metavar="KiB/s",
        help="limits uploads to a maximum rate in KiB/s (default: unlimited)",
    )
    parser.add_argument(
        "--limit-download",
        type=int,
        default=0,
        metavar="KiB/s",
        help="limits downloads to a maximum rate in KiB/s (default: unlimited)",
    )
    parser.add_argument(
        "--cacert",
        action="append",
        default=[],
        metavar="FILE",
        help="file to load root certificates from (default: use system certificates)",
    )
    parser.add_argument(
        "--tls-client-cert",
        metavar="FILE",
        help="path to a file containing PEM encoded TLS client certificate and private key",
    )
    parser.add_argument(
        "--insecure-tls",
        action="store_true",
        help="skip TLS certificate verification when connecting to the repository (insecure)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="log resolution steps to stderr",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    locate = commands.add_parser("locate", help="show the backend and resolved config")
    locate.add_argument("location")

    init = commands.add_parser("init", help="create a new repository")
    init.add_argument("location")

    ls = commands.add_parser("ls", help="list files of a type")
    ls.add_argument("location")
    ls.add_argument("type", choices=FILE_TYPES)

    cat = commands.add_parser("cat", help="print a file to stdout")
    cat.add_argument("location")
    cat.add_argument("type", choices=FILE_TYPES)
    cat.add_argument("name", nargs="?", default="")

    commands.add_parser("options", help="list all extended options")

    return parser


class CLIApp:
    """
    Runs one command for parsed arguments.

    Attributes:
        args: Parsed command-line arguments.
        options: Extended options from ``-o``.
        transport_options: TLS settings for HTTP backends.
        limits: Bandwidth limits.
    """

    def __init__(self, args: argparse.Namespace) -> None:
        self.args = args
        self.options = Options.parse(args.option)
        self.transport_options = TransportOptions(
            cacert_files=tuple(args.cacert),
            tls_client_cert=args.tls_client_cert,
            insecure_tls=args.insecure_tls,
        )
        self.limits = Limits(upload_kbps=args.limit_upload, download_kbps=args.limit_download)

    def run(self) -> None:
        handler = getattr(self, f"_cmd_{self.args.command}")
        handler()

    def _cmd_locate(self) -> None:
        location = parse_location(self.args.location)
        config = resolve_config(location, self.options)

        print(f"location: {strip_password(self.args.location)}")
        print(f"scheme:   {location.scheme}")
        for key, value in config.model_dump(mode="json", exclude={"scheme"}).items():
            print(f"  {key}: {value}")

    def _cmd_init(self) -> None:
        be = create_backend(self.args.location, self.options, self.transport_options)
        with be:
            print(f"[OK] Created {be.scheme} repository at {strip_password(self.args.location)}")

    def _cmd_ls(self) -> None:
        be = open_backend(self.args.location, self.options, self.transport_options, self.limits)
        with be:
            for info in be.list(FileType(self.args.type)):
                print(f"{info.name}  {info.size}")

    def _cmd_cat(self) -> None:
        h = Handle(FileType(self.args.type), self.args.name)
        be = open_backend(self.args.location, self.options, self.transport_options, self.limits)
        with be:
            sys.stdout.buffer.write(be.load(h))
            sys.stdout.buffer.flush()

    def _cmd_options(self) -> None:
        rows = list_options()
        width = max(len(name) for name, _, _ in rows)
        for name, type_name, help_text in rows:
            print(f"  {name:<{width}}  {help_text} ({type_name})")


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the command-line front end."""
    load_dotenv(find_dotenv(usecwd=True))

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        CLIApp(args).run()
    except LocationError as e:
        print(f"Fatal: {e}", file=sys.stderr)
        return 1
    except (StorageError, ValueError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
