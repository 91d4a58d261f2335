#!/usr/bin/env python3
"""
Output column registry for hsnoop generated scripts.

Each column knows:
- Its header label and the printf format used for that label
- For every event kind (request, response, gc), the printf format fragment
  and the D expressions that produce its value

Value expressions are templates over the probe payload fields
({fd}, {raddr}, {rport}, {method}, {url}) and the correlation key ({key}).
The script assembler fills them in per probe and argument style.

Format fragments never contain spaces: rows are built by joining fragments
with a single space, and header and rows must split into the same fields.
"""

from typing import Dict, List, Tuple


# Event kinds (one per printed row type)
KIND_REQUEST = 'request'
KIND_RESPONSE = 'response'
KIND_GC = 'gc'
KINDS = (KIND_REQUEST, KIND_RESPONSE, KIND_GC)

# Printed where a column has no value for an event kind
PLACEHOLDER = '"-"'

# D variables shared with the script assembler
START_VAR = 'hs_start'
REQSTART_VAR = 'hs_reqstart'
METHOD_VAR = 'hs_method'
URL_VAR = 'hs_url'
GCSTART_VAR = 'self->hs_gcstart'


class InvalidColumnError(ValueError):
    """Raised for a column name that is not in the registry."""

    def __init__(self, name):
        super().__init__(f'invalid column "{name}"')
        self.name = name


class Column:
    """A selectable output column."""

    def __init__(self, name: str, header: str, header_fmt: str,
                 kinds: Dict[str, Tuple[str, List[str]]]):
        self.name = name
        self.header = header
        self.header_fmt = header_fmt
        self.kinds = kinds

    def value(self, kind: str, fields: Dict[str, str]) -> Tuple[str, List[str]]:
        """
        Return (printf fragment, expressions) for one event kind.

        Args:
            kind: One of KINDS
            fields: Payload expressions to substitute into the templates

        Raises:
            ValueError: If kind is not a known event kind
        """
        if kind not in self.kinds:
            raise ValueError(f'Unknown event kind {kind!r} for column {self.name}')
        fmt, templates = self.kinds[kind]
        return fmt, [t.format(**fields) for t in templates]

    def __repr__(self):
        return f'Column({self.name!r})'


def _elapsed(since, unit_ns, frac_ns, frac_mod):
    # Whole units plus the fractional part as its own integer
    return [
        f'(timestamp - {since}) / {unit_ns}',
        f'((timestamp - {since}) / {frac_ns}) % {frac_mod}',
    ]


def _same(fmt, templates):
    """Same rendering for request and response rows, placeholder for gc."""
    blank = fmt.replace('d', 's')
    return {
        KIND_REQUEST: (fmt, templates),
        KIND_RESPONSE: (fmt, templates),
        KIND_GC: (blank, [PLACEHOLDER]),
    }


_TIME = ('%5d.%06d', _elapsed(START_VAR, 1000000000, 1000, 1000000))
_CORRELATED = '[{key}]'

COLUMNS = {
    'time': Column('time', 'TIME', '%12s', {
        KIND_REQUEST: _TIME,
        KIND_RESPONSE: _TIME,
        KIND_GC: _TIME,
    }),
    'pid': Column('pid', 'PID', '%6s', {
        KIND_REQUEST: ('%6d', ['pid']),
        KIND_RESPONSE: ('%6d', ['pid']),
        KIND_GC: ('%6d', ['pid']),
    }),
    # probename is "http-server-request", "http-client-response", ...
    'probe': Column('probe', 'PROBE', '%-6s', {
        KIND_REQUEST: ('%-6s', ['substr(probename, 5, 6)']),
        KIND_RESPONSE: ('%-6s', ['substr(probename, 5, 6)']),
        KIND_GC: ('%-6s', ['"gc"']),
    }),
    'which': Column('which', 'WH', '%2s', {
        KIND_REQUEST: ('%2s', ['"->"']),
        KIND_RESPONSE: ('%2s', ['"<-"']),
        KIND_GC: ('%2s', [PLACEHOLDER]),
    }),
    'latency': Column('latency', 'LATENCY', '%10s', {
        KIND_REQUEST: ('%10s', [PLACEHOLDER]),
        KIND_RESPONSE: ('%6d.%03d', _elapsed(REQSTART_VAR + _CORRELATED, 1000000, 1000, 1000)),
        KIND_GC: ('%6d.%03d', _elapsed(GCSTART_VAR, 1000000, 1000, 1000)),
    }),
    'method': Column('method', 'METHOD', '%-7s', {
        KIND_REQUEST: ('%-7s', ['{method}']),
        KIND_RESPONSE: ('%-7s', [METHOD_VAR + _CORRELATED]),
        KIND_GC: ('%-7s', [PLACEHOLDER]),
    }),
    'path': Column('path', 'PATH', '%s', {
        KIND_REQUEST: ('%s', ['strtok({url}, "?")']),
        KIND_RESPONSE: ('%s', [f'strtok({URL_VAR}{_CORRELATED}, "?")']),
        KIND_GC: ('%s', [PLACEHOLDER]),
    }),
    'url': Column('url', 'URL', '%s', {
        KIND_REQUEST: ('%s', ['{url}']),
        KIND_RESPONSE: ('%s', [URL_VAR + _CORRELATED]),
        KIND_GC: ('%s', [PLACEHOLDER]),
    }),
    'raddr': Column('raddr', 'RADDR', '%-15s', _same('%-15s', ['{raddr}'])),
    'rport': Column('rport', 'RPORT', '%5s', _same('%5d', ['{rport}'])),
    'fd': Column('fd', 'FD', '%4s', _same('%4d', ['{fd}'])),
}


def column_names() -> List[str]:
    """Names of all registered columns, in registry order."""
    return list(COLUMNS)


def lookup(name: str) -> Column:
    """
    Find a column by name.

    Raises:
        InvalidColumnError: If the name is not registered
    """
    try:
        return COLUMNS[name]
    except KeyError:
        raise InvalidColumnError(name) from None


def resolve(names) -> List[Column]:
    """Look up every name, preserving order. Fails on the first unknown name."""
    return [lookup(name) for name in names]
