from .probe import ConnectionSettings, DEFAULT_TIMEOUT, parse_target
from .results import Grade, render_text, to_json_obj
from .scanners import TLS_HANDSHAKE, DEFAULT_MAX_WORKERS, scan_host

import os
import sys
import json
import logging
import argparse
from typing import Optional

def main() -> None:
    parser = argparse.ArgumentParser(prog="python -m handshake_scan", formatter_class=argparse.ArgumentDefaultsHelpFormatter, description=TLS_HANDSHAKE.description)
    parser.add_argument("target", help="server to scan, in the form of 'example.com', 'example.com:443', or even a full URL")
    parser.add_argument("--timeout", "-t", dest="timeout", type=float, default=DEFAULT_TIMEOUT, help="socket connection and handshake timeout in seconds")
    parser.add_argument("--max-workers", "-w", type=int, default=DEFAULT_MAX_WORKERS, help="maximum number of scanners to run at the same time")
    parser.add_argument("--server-name-indication", "-s", default=None, help="value to be used in the SNI extension, defaults to the target host, pass empty string to not send SNI")
    parser.add_argument("--scanners", dest="scanners_str", default=','.join(TLS_HANDSHAKE.scanners), help="comma separated list of scanners to run")
    parser.add_argument("--format", "-f", choices=["json", "text"], default="json", help="output format")
    parser.add_argument("--proxy", default=None, help="HTTP proxy to use for the connection, defaults to the env variable 'https_proxy' else no proxy")
    parser.add_argument("--verbose", "-v", action="count", default=0, help="increase output verbosity")
    parser.add_argument("--progress", default=False, action=argparse.BooleanOptionalAction, help="write lines with progress percentages to stderr")
    args = parser.parse_args()

    logging.basicConfig(
        datefmt='%Y-%m-%d %H:%M:%S',
        format='{asctime}.{msecs:0<3.0f} {module} {threadName} {levelname}: {message}',
        style='{',
        level=[logging.WARNING, logging.INFO, logging.DEBUG][min(2, args.verbose)]
    )

    scanner_names = [name for name in args.scanners_str.split(',') if name]
    if not scanner_names:
        parser.error("no scanners to run")
    for name in scanner_names:
        if name not in TLS_HANDSHAKE.scanners:
            parser.error(f'invalid scanner name "{name}", must be one of {", ".join(TLS_HANDSHAKE.scanners)}')

    host, port = parse_target(args.target)

    proxy = os.environ.get('https_proxy') or os.environ.get('HTTPS_PROXY') if args.proxy is None else args.proxy

    if args.progress:
        progress = lambda current, total: print(f'{current/total:.0%}', flush=True, file=sys.stderr)
        print('0%', flush=True, file=sys.stderr)
    else:
        progress = lambda current, total: None

    server_name: Optional[str]
    if args.server_name_indication is None:
        # Argument unset, default to host.
        server_name = host
    else:
        # Empty string is passed along as "no SNI".
        server_name = args.server_name_indication

    results = scan_host(
        ConnectionSettings(
            host=host,
            port=port,
            proxy=proxy,
            timeout_in_seconds=args.timeout
        ),
        server_name,
        scanner_names=scanner_names,
        max_workers=args.max_workers,
        progress=progress,
    )

    if args.format == 'json':
        json.dump(to_json_obj(results), sys.stdout, indent=2)
        print()
    else:
        for name, result in results.items():
            print(f'{name}: {result.grade.name}')
            if result.error is not None:
                print(f'Scan error: {result.error}')
            text = render_text(result.output)
            if text:
                print(text)

    if any(result.grade == Grade.Bad for result in results.values()):
        sys.exit(1)

if __name__ == '__main__':
    main()
