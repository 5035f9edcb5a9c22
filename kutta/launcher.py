import argparse
import logging
import os
import sys

from . import server
from .config import FOLDER_TO_SERVE, PORT, ServerConfig
from .privdrop import PrivilegeDropError

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


def build_parser():
    parser = argparse.ArgumentParser(prog='kutta', description='Serve a directory for browsing, upload and download.')
    parser.add_argument('-p', '--port', type=int, default=PORT, help='Port to serve on')
    parser.add_argument('--bind', default='', help='Address to listen on (default: all interfaces)')
    parser.add_argument('--dir', default=FOLDER_TO_SERVE, help='Directory to serve')
    parser.add_argument('--read-only', action='store_true', help='Enable read-only mode')
    parser.add_argument('--upload-only', action='store_true', help='Enable upload-only mode')
    parser.add_argument('--auth', default='', metavar='USER:PASS', help='Enable basic auth')
    parser.add_argument('--user', default='', help='Drop privileges to this UNIX user')
    parser.add_argument('--log', default='', metavar='PATH', help='Path to log file')
    parser.add_argument('--no-qr', action='store_true', help='Do not print the QR code at startup')
    return parser


def configure_logging(log_path=''):
    """Send log records to stderr, or append them to ``log_path``."""
    if log_path:
        handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def config_from_args(args):
    return ServerConfig(
        base_dir=os.path.normpath(args.dir),
        read_only=args.read_only,
        upload_only=args.upload_only,
        auth_creds=args.auth,
        uploads_only_listing=args.port == PORT,
    )


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        configure_logging(args.log)
    except OSError as e:
        print(f"Unable to open log file: {e}", file=sys.stderr)
        return 1

    if not os.path.isdir(args.dir):
        logger.critical("Error: Path not found: %s", args.dir)
        return 1

    config = config_from_args(args)
    try:
        server.run_server(config, port=args.port, bind=args.bind,
                          run_as_user=args.user or None, show_qr=not args.no_qr)
    except PrivilegeDropError as e:
        logger.critical("%s", e)
        return 1
    except OSError as e:
        logger.critical("Server error: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
