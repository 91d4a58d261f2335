#!/usr/bin/env python3
"""
D script assembler for hsnoop.

Turns a RunConfig into the text of a DTrace program that watches the
Node.js HTTP and GC probes:

  BEGIN                     print the column header, record start time
  http-<cat>-request        (optional two-line row) remember start/method/url
  http-<cat>-response       print the row, forget the request
  gc-start / gc-done        per-thread GC timing

Requests and responses are joined on (pid, remote address, remote port).
Only one outstanding request per key is remembered: a second request on the
same key before the response arrives overwrites the first one's start time,
method and URL. A response with no remembered request prints nothing.
"""

import platform
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import hsnoop_columns as columns
from hsnoop_columns import KIND_REQUEST, KIND_RESPONSE, KIND_GC


# Event categories
CATEGORY_SERVER = 'server'
CATEGORY_CLIENT = 'client'
CATEGORY_GC = 'gc'
HTTP_CATEGORIES = (CATEGORY_SERVER, CATEGORY_CLIENT)

# Payload access styles
ARG_TRANSLATED = 'translated'
ARG_SIMPLE = 'simple'
ARG_STYLES = (ARG_TRANSLATED, ARG_SIMPLE)

# Systems without the node translators fall back to raw probe arguments
PLATFORM_ARG_STYLES = {
    'Darwin': ARG_SIMPLE,
}

DEFAULT_COLUMNS = ('time', 'pid', 'probe', 'latency', 'method', 'path')
DEFAULT_COLUMNS_TWO_LINE = ('time', 'pid', 'probe', 'which', 'latency', 'method', 'path')

PROVIDER = 'node*'

PROBES = {
    CATEGORY_SERVER: ('http-server-request', 'http-server-response'),
    CATEGORY_CLIENT: ('http-client-request', 'http-client-response'),
}
GC_START_PROBE = 'gc-start'
GC_DONE_PROBE = 'gc-done'

# Request probes: (request *, connection *, raddr, rport, method, url, fd)
# Response probes: (connection *, raddr, rport, fd)
_TRANSLATED_FIELDS = {
    KIND_REQUEST: {
        'fd': 'args[1]->fd',
        'raddr': 'args[1]->remoteAddress',
        'rport': 'args[1]->remotePort',
        'method': 'args[0]->method',
        'url': 'args[0]->url',
    },
    KIND_RESPONSE: {
        'fd': 'args[0]->fd',
        'raddr': 'args[0]->remoteAddress',
        'rport': 'args[0]->remotePort',
    },
}
_SIMPLE_FIELDS = {
    KIND_REQUEST: {
        'fd': 'arg6',
        'raddr': 'copyinstr(arg2)',
        'rport': 'arg3',
        'method': 'copyinstr(arg4)',
        'url': 'copyinstr(arg5)',
    },
    KIND_RESPONSE: {
        'fd': 'arg3',
        'raddr': 'copyinstr(arg1)',
        'rport': 'arg2',
    },
}

# category -> arg style -> event kind -> field -> D expression
PAYLOAD_FIELDS = {
    category: {ARG_TRANSLATED: _TRANSLATED_FIELDS, ARG_SIMPLE: _SIMPLE_FIELDS}
    for category in HTTP_CATEGORIES
}


def default_arg_style(system: Optional[str] = None) -> str:
    """Payload access style for the host (or the given) operating system."""
    if system is None:
        system = platform.system()
    return PLATFORM_ARG_STYLES.get(system, ARG_TRANSLATED)


class RunConfig(NamedTuple):
    """Resolved options for one invocation."""
    categories: Tuple[str, ...]
    columns: Tuple[str, ...]
    two_line: bool
    pids: Tuple[int, ...]
    arg_style: str
    dry_run: bool

    @property
    def http_categories(self):
        return tuple(c for c in self.categories if c in HTTP_CATEGORIES)

    @property
    def gc(self):
        return CATEGORY_GC in self.categories


def make_config(server=False, client=False, gc=False, two_line=False,
                column_names=None, pids=(), arg_style=None, dry_run=False) -> RunConfig:
    """
    Build a RunConfig, filling in defaults.

    Server tracing is on when no category was requested. Columns default to
    DEFAULT_COLUMNS (DEFAULT_COLUMNS_TWO_LINE in two-line mode). The argument
    style defaults to the platform's.

    Raises:
        ValueError: If arg_style is not one of ARG_STYLES
    """
    if not (server or client or gc):
        server = True
    categories = tuple(name for name, wanted in (
        (CATEGORY_SERVER, server),
        (CATEGORY_CLIENT, client),
        (CATEGORY_GC, gc),
    ) if wanted)

    if not column_names:
        column_names = DEFAULT_COLUMNS_TWO_LINE if two_line else DEFAULT_COLUMNS

    if arg_style is None:
        arg_style = default_arg_style()
    if arg_style not in ARG_STYLES:
        raise ValueError(f'Unknown argument style {arg_style!r} (expected one of {", ".join(ARG_STYLES)})')

    return RunConfig(
        categories=categories,
        columns=tuple(column_names),
        two_line=bool(two_line),
        pids=tuple(pids),
        arg_style=arg_style,
        dry_run=bool(dry_run),
    )


# === Clause rendering ===

class Clause(NamedTuple):
    """One probe clause: probe description, optional predicate, actions."""
    probe: str
    predicate: Optional[str]
    actions: List[str]


def render_clause(clause: Clause) -> str:
    lines = [clause.probe]
    if clause.predicate:
        lines.append(f'/{clause.predicate}/')
    lines.append('{')
    lines.extend('\t' + action for action in clause.actions)
    lines.append('}')
    return '\n'.join(lines)


def printf_action(fragments: Sequence[str], args: Sequence[str]) -> str:
    """printf() with the fragments joined by single spaces and a newline."""
    fmt = ' '.join(fragments) + '\\n'
    return 'printf(' + ', '.join([f'"{fmt}"'] + list(args)) + ');'


def header_action(cols: Sequence[columns.Column]) -> str:
    return printf_action([c.header_fmt for c in cols], [f'"{c.header}"' for c in cols])


def row_action(cols: Sequence[columns.Column], kind: str, fields: Dict[str, str]) -> str:
    fragments = []
    args = []
    for col in cols:
        fmt, exprs = col.value(kind, fields)
        fragments.append(fmt)
        args.extend(exprs)
    return printf_action(fragments, args)


def pid_predicate(pids: Sequence[int]) -> Optional[str]:
    """'pid == 1' for one pid, 'pid == 1 || pid == 2' for several, None for none."""
    if not pids:
        return None
    return ' || '.join(f'pid == {p}' for p in pids)


def correlation_key(fields: Dict[str, str]) -> str:
    return f'pid, {fields["raddr"]}, {fields["rport"]}'


def probe_name(name: str) -> str:
    return f'{PROVIDER}:::{name}'


# === Clause builders ===

def begin_clause(cols) -> Clause:
    return Clause('BEGIN', None, [
        header_action(cols),
        f'{columns.START_VAR} = timestamp;',
    ])


def http_clauses(category: str, cols, config: RunConfig) -> List[Clause]:
    """Request and response clauses for one HTTP category."""
    request_probe, response_probe = PROBES[category]
    payload = PAYLOAD_FIELDS[category][config.arg_style]

    request_fields = dict(payload[KIND_REQUEST])
    request_key = correlation_key(request_fields)
    request_fields['key'] = request_key

    request_actions = []
    if config.two_line:
        request_actions.append(row_action(cols, KIND_REQUEST, request_fields))
    request_actions.extend([
        f'{columns.REQSTART_VAR}[{request_key}] = timestamp;',
        f'{columns.METHOD_VAR}[{request_key}] = {request_fields["method"]};',
        f'{columns.URL_VAR}[{request_key}] = {request_fields["url"]};',
    ])

    response_fields = dict(payload[KIND_RESPONSE])
    response_key = correlation_key(response_fields)
    response_fields['key'] = response_key

    response_actions = [
        row_action(cols, KIND_RESPONSE, response_fields),
        f'{columns.REQSTART_VAR}[{response_key}] = 0;',
        f'{columns.METHOD_VAR}[{response_key}] = 0;',
        f'{columns.URL_VAR}[{response_key}] = 0;',
    ]

    return [
        Clause(probe_name(request_probe), pid_predicate(config.pids), request_actions),
        Clause(probe_name(response_probe), f'{columns.REQSTART_VAR}[{response_key}]', response_actions),
    ]


def gc_clauses(cols, config: RunConfig) -> List[Clause]:
    return [
        Clause(probe_name(GC_START_PROBE), pid_predicate(config.pids), [
            f'{columns.GCSTART_VAR} = timestamp;',
        ]),
        Clause(probe_name(GC_DONE_PROBE), columns.GCSTART_VAR, [
            row_action(cols, KIND_GC, {}),
            f'{columns.GCSTART_VAR} = 0;',
        ]),
    ]


PREAMBLE = [
    '#!/usr/sbin/dtrace -s',
    '',
    '#pragma D option quiet',
    '#pragma D option switchrate=10hz',
]


def build_clauses(config: RunConfig) -> List[Clause]:
    """
    Build every clause for a configuration.

    Raises:
        InvalidColumnError: If any selected column is unknown
    """
    cols = columns.resolve(config.columns)

    clauses = [begin_clause(cols)]
    for category in config.http_categories:
        clauses.extend(http_clauses(category, cols, config))
    if config.gc:
        clauses.extend(gc_clauses(cols, config))
    return clauses


def assemble(config: RunConfig) -> str:
    """
    Generate the complete D script for a configuration.

    Raises:
        InvalidColumnError: If any selected column is unknown (nothing is generated)
    """
    clauses = build_clauses(config)
    blocks = ['\n'.join(PREAMBLE)] + [render_clause(c) for c in clauses]
    return '\n\n'.join(blocks) + '\n'
