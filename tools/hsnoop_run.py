#!/usr/bin/env python3
"""
Run a generated D script under dtrace, or print it for a dry run.

The script is written to <tmpdir>/hsnoop.<pid>.d, made executable and
passed to dtrace with any extra options from HSNOOP_DTRACE_OPTS. dtrace
inherits stdout/stderr so its output streams straight through, and its exit
status becomes ours. Ctrl-C is left to dtrace: we keep waiting until it
exits. The script file is removed however the run ends.
"""

import os
import shlex
import subprocess
import sys
import tempfile
from typing import List, Optional, Sequence

PROGNAME = 'hsnoop'
DTRACE = 'dtrace'
OPTS_ENV = 'HSNOOP_DTRACE_OPTS'


class TracerInvocationError(Exception):
    """dtrace could not be started."""

    status = 1

    def __init__(self, tracer, reason):
        super().__init__(f'failed to run {tracer}: {reason}')
        self.tracer = tracer
        self.reason = reason


def script_path(tmpdir: Optional[str] = None) -> str:
    if tmpdir is None:
        tmpdir = tempfile.gettempdir()
    return os.path.join(tmpdir, f'{PROGNAME}.{os.getpid()}.d')


def extra_options(environ=None) -> List[str]:
    """Tracer options from HSNOOP_DTRACE_OPTS, split with shell quoting rules."""
    if environ is None:
        environ = os.environ
    return shlex.split(environ.get(OPTS_ENV, ''))


def tracer_command(path: str, tracer: str = DTRACE,
                   extra_opts: Optional[Sequence[str]] = None) -> List[str]:
    if extra_opts is None:
        extra_opts = extra_options()
    return [tracer] + list(extra_opts) + ['-s', path]


def wait_tracer(proc) -> int:
    """
    Wait for the tracer to exit and return its status.

    Ctrl-C reaches dtrace as well as us; dtrace then prints its final output
    and exits on its own, so an interrupt here only means keep waiting.
    """
    while True:
        try:
            return proc.wait()
        except KeyboardInterrupt:
            continue


def run_script(text: str, dry_run: bool = False, tracer: str = DTRACE,
               extra_opts: Optional[Sequence[str]] = None,
               tmpdir: Optional[str] = None, out=None, verbose: bool = False) -> int:
    """
    Print or execute a generated script.

    Args:
        text: Complete D script
        dry_run: Write the script to out (default stdout) and return 0
        tracer: Tracer executable
        extra_opts: Options placed before '-s <script>' (default: from environment)
        tmpdir: Directory for the script file (default: system temp dir)
        out: Stream for dry-run output
        verbose: Report the script path and command on stderr

    Returns:
        int: Exit status (the tracer's own status when it ran)

    Raises:
        TracerInvocationError: If the tracer could not be started
        OSError: If the script file could not be written
    """
    if dry_run:
        if out is None:
            out = sys.stdout
        out.write(text)
        return 0

    path = script_path(tmpdir)
    try:
        with open(path, 'w', encoding='utf-8') as f:
            f.write(text)
        os.chmod(path, 0o755)

        cmd = tracer_command(path, tracer, extra_opts)
        if verbose:
            print(f'Script: {path}', file=sys.stderr)
            print(f'Running: {shlex.join(cmd)}', file=sys.stderr)

        try:
            proc = subprocess.Popen(cmd)
        except OSError as e:
            raise TracerInvocationError(tracer, e.strerror or e) from e
        return wait_tracer(proc)
    finally:
        if os.path.exists(path):
            os.unlink(path)
