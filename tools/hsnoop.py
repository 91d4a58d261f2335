#!/usr/bin/env python3
"""
hsnoop: trace Node.js HTTP client/server activity and GC with DTrace

Builds a D script from the selected probes and columns, then runs it under
dtrace (or prints it with -n).

Usage:
  python hsnoop.py                      # trace HTTP server requests
  python hsnoop.py -c -s                # client and server
  python hsnoop.py -g -n                # print a GC-only script
  python hsnoop.py -l -o time,pid,which,method,url -p 1234
"""

import argparse
import pathlib
import sys
from importlib import metadata

import hsnoop_columns
import hsnoop_script
from hsnoop_columns import InvalidColumnError
from hsnoop_run import OPTS_ENV, PROGNAME, TracerInvocationError, run_script


def get_version():
    """Read version from VERSION file at project root, else from the installed package."""
    version_file = pathlib.Path(__file__).parent.parent / 'VERSION'
    if version_file.exists():
        return version_file.read_text().strip()
    try:
        return metadata.version('httpsnoop')
    except metadata.PackageNotFoundError:
        return 'unknown'

__version__ = get_version()


def column_list(value):
    """Parse 'col[,col...]'. Names are checked when the script is built."""
    return [name.strip().lower() for name in value.split(',') if name.strip()]


def pid_list(value):
    """Parse 'pid[,pid...]' into positive integers."""
    pids = []
    for item in value.split(','):
        item = item.strip()
        if not item:
            continue
        try:
            pid = int(item)
        except ValueError:
            raise argparse.ArgumentTypeError(f'invalid pid: {item!r}') from None
        if pid <= 0:
            raise argparse.ArgumentTypeError(f'invalid pid: {item!r}')
        pids.append(pid)
    if not pids:
        raise argparse.ArgumentTypeError(f'no pids in {value!r}')
    return pids


def build_parser():
    parser = argparse.ArgumentParser(
        prog=PROGNAME,
        description='Trace Node.js HTTP requests/responses and garbage collection with DTrace',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f'''
Columns (-o):
  {", ".join(hsnoop_columns.column_names())}

  default:            {",".join(hsnoop_script.DEFAULT_COLUMNS)}
  default with -l:    {",".join(hsnoop_script.DEFAULT_COLUMNS_TWO_LINE)}

Examples:
  # Server requests in every node process:
  hsnoop

  # Client and server, one line each for request and response:
  hsnoop -c -s -l

  # GC pauses in two processes:
  hsnoop -g -p 1234,5678

  # Print the generated D script without running it:
  hsnoop -n -o time,pid,latency,url

Environment:
  {OPTS_ENV}    extra options passed to dtrace

Version: {__version__}
        '''
    )

    parser.add_argument('-c', dest='client', action='store_true',
                        help='Trace HTTP client activity')
    parser.add_argument('-g', dest='gc', action='store_true',
                        help='Trace garbage collection')
    parser.add_argument('-s', dest='server', action='store_true',
                        help='Trace HTTP server activity (default if -c and -g are absent)')
    parser.add_argument('-l', dest='two_line', action='store_true',
                        help='Print one line for the request and one for the response')
    parser.add_argument('-n', dest='dry_run', action='store_true',
                        help='Print the D script instead of running it')
    parser.add_argument('-o', dest='columns', metavar='col[,col...]', type=column_list,
                        action='append', help='Output columns, in order')
    parser.add_argument('-p', dest='pids', metavar='pid[,pid...]', type=pid_list,
                        action='append', help='Only trace these process IDs')
    parser.add_argument('-t', dest='arg_style', choices=hsnoop_script.ARG_STYLES,
                        help=f'Probe argument access (default on this system: '
                             f'{hsnoop_script.default_arg_style()})')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Report configuration and tracer command on stderr')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def config_from_args(args):
    """Turn parsed arguments into a RunConfig."""
    column_names = [name for group in args.columns or [] for name in group]
    pids = [pid for group in args.pids or [] for pid in group]
    return hsnoop_script.make_config(
        server=args.server,
        client=args.client,
        gc=args.gc,
        two_line=args.two_line,
        column_names=column_names,
        pids=pids,
        arg_style=args.arg_style,
        dry_run=args.dry_run,
    )


def print_config(config):
    print(f'Categories: {", ".join(config.categories)}', file=sys.stderr)
    print(f'Columns:    {", ".join(config.columns)}', file=sys.stderr)
    print(f'Arg style:  {config.arg_style}', file=sys.stderr)
    if config.pids:
        print(f'PIDs:       {", ".join(str(p) for p in config.pids)}', file=sys.stderr)


def main(argv=None):
    """Main CLI entry point. Returns the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    config = config_from_args(args)

    if args.verbose:
        print_config(config)

    try:
        script = hsnoop_script.assemble(config)
    except InvalidColumnError as e:
        print(f'{PROGNAME}: {e}', file=sys.stderr)
        return 1

    try:
        return run_script(script, dry_run=config.dry_run, verbose=args.verbose)
    except TracerInvocationError as e:
        print(f'{PROGNAME}: {e}', file=sys.stderr)
        return e.status
    except OSError as e:
        print(f'{PROGNAME}: cannot write script: {e}', file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
