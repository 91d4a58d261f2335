#!/usr/bin/env python3
"""
Unit tests for hsnoop_script.py

Run with: python test_hsnoop_script.py
"""

import itertools
import re
import unittest
import os
import sys

# Import the module we're testing
sys.path.insert(0, os.path.dirname(__file__))
import hsnoop_columns
import hsnoop_script
from hsnoop_columns import InvalidColumnError
from hsnoop_script import (
    ARG_SIMPLE, ARG_TRANSLATED, DEFAULT_COLUMNS, DEFAULT_COLUMNS_TWO_LINE,
    assemble, make_config, pid_predicate,
)


PRINTF_RE = re.compile(r'printf\("([^"]*)\\n"')

SERVER_REQUEST = 'node*:::http-server-request\n'
SERVER_RESPONSE = 'node*:::http-server-response\n'
CLIENT_REQUEST = 'node*:::http-client-request\n'
CLIENT_RESPONSE = 'node*:::http-client-response\n'
GC_START = 'node*:::gc-start\n'
GC_DONE = 'node*:::gc-done\n'


def printf_formats(script):
    """Format strings of every printf in the script (without the newline)."""
    return PRINTF_RE.findall(script)


def clause(script, probe):
    """Text of the clause for a probe, up to its closing brace."""
    start = script.index(probe)
    return script[start:script.index('\n}', start) + 2]


class TestConfig(unittest.TestCase):
    """Test RunConfig defaults."""

    def test_server_is_default(self):
        config = make_config(arg_style=ARG_TRANSLATED)
        self.assertEqual(config.categories, ('server',))
        self.assertFalse(config.gc)

    def test_gc_only_disables_server_default(self):
        config = make_config(gc=True, arg_style=ARG_TRANSLATED)
        self.assertEqual(config.categories, ('gc',))
        self.assertEqual(config.http_categories, ())
        self.assertTrue(config.gc)

    def test_default_columns(self):
        config = make_config(arg_style=ARG_TRANSLATED)
        self.assertEqual(config.columns, ('time', 'pid', 'probe', 'latency', 'method', 'path'))

    def test_default_columns_two_line(self):
        config = make_config(two_line=True, arg_style=ARG_TRANSLATED)
        self.assertEqual(config.columns, ('time', 'pid', 'probe', 'which', 'latency', 'method', 'path'))

    def test_explicit_columns_not_prefixed(self):
        config = make_config(two_line=True, column_names=['pid', 'url'], arg_style=ARG_TRANSLATED)
        self.assertEqual(config.columns, ('pid', 'url'))

    def test_bad_arg_style(self):
        with self.assertRaises(ValueError):
            make_config(arg_style='fancy')

    def test_platform_default_arg_style(self):
        self.assertEqual(hsnoop_script.default_arg_style('Darwin'), ARG_SIMPLE)
        self.assertEqual(hsnoop_script.default_arg_style('SunOS'), ARG_TRANSLATED)
        self.assertEqual(hsnoop_script.default_arg_style('Linux'), ARG_TRANSLATED)

    def test_config_is_immutable(self):
        config = make_config(arg_style=ARG_TRANSLATED)
        with self.assertRaises(AttributeError):
            config.two_line = True


class TestClauseCounts(unittest.TestCase):
    """Test that each requested category yields exactly its clause pair."""

    def test_all_category_subsets(self):
        for server, client, gc in itertools.product([False, True], repeat=3):
            if not (server or client or gc):
                continue
            config = make_config(server=server, client=client, gc=gc, arg_style=ARG_TRANSLATED)
            script = assemble(config)
            with self.subTest(server=server, client=client, gc=gc):
                self.assertEqual(script.count(SERVER_REQUEST), int(server))
                self.assertEqual(script.count(SERVER_RESPONSE), int(server))
                self.assertEqual(script.count(CLIENT_REQUEST), int(client))
                self.assertEqual(script.count(CLIENT_RESPONSE), int(client))
                self.assertEqual(script.count(GC_START), int(gc))
                self.assertEqual(script.count(GC_DONE), int(gc))
                self.assertEqual(script.count('BEGIN\n'), 1)

    def test_gc_only_script(self):
        """-g: GC start records a timestamp, GC done is gated on it, no HTTP clauses."""
        script = assemble(make_config(gc=True, arg_style=ARG_TRANSLATED))
        self.assertNotIn('http-', script)

        start = clause(script, GC_START)
        self.assertIn('self->hs_gcstart = timestamp;', start)

        done = clause(script, GC_DONE)
        self.assertIn('/self->hs_gcstart/', done)
        self.assertIn('self->hs_gcstart = 0;', done)
        self.assertIn('"gc"', done)


class TestColumnOrder(unittest.TestCase):
    """Test that header and rows keep the selected columns in order."""

    def check_order(self, names, two_line=True):
        config = make_config(server=True, client=True, gc=True, two_line=two_line,
                             column_names=names, arg_style=ARG_TRANSLATED)
        script = assemble(config)
        cols = hsnoop_columns.resolve(names)

        formats = printf_formats(script)
        # header, then per HTTP category (request row, response row), then gc
        expected_rows = 1 + 2 * (2 if two_line else 1) + 1
        self.assertEqual(len(formats), expected_rows)

        header = formats[0]
        self.assertEqual(header.split(' '), [c.header_fmt for c in cols])
        header_args = re.search(r'printf\("[^"]*\\n", (.*)\);', script).group(1)
        self.assertEqual(header_args, ', '.join(f'"{c.header}"' for c in cols))
        # printed header splits into one whitespace field per column, like every row
        printed = header % tuple(c.header for c in cols)
        self.assertEqual(len(printed.split()), len(names))

        for fmt in formats[1:]:
            self.assertEqual(len(fmt.split(' ')), len(names))

        gc_fmt = formats[-1].split(' ')
        self.assertEqual(gc_fmt, [c.kinds['gc'][0] for c in cols])

    def test_default_order(self):
        self.check_order(list(DEFAULT_COLUMNS_TWO_LINE))

    def test_reversed_order(self):
        self.check_order(list(reversed(hsnoop_columns.column_names())))

    def test_single_column(self):
        self.check_order(['url'], two_line=False)

    def test_every_permutation_of_three(self):
        for names in itertools.permutations(['fd', 'latency', 'probe']):
            with self.subTest(names=names):
                self.check_order(list(names))

    def test_response_row_fragments(self):
        script = assemble(make_config(column_names=['pid', 'latency', 'method'],
                                      arg_style=ARG_TRANSLATED))
        response = clause(script, SERVER_RESPONSE)
        self.assertIn('printf("%6d %6d.%03d %-7s\\n", pid, ', response)


class TestPidFilter(unittest.TestCase):
    """Test PID predicates on request clauses."""

    def test_no_pids(self):
        self.assertIsNone(pid_predicate([]))
        script = assemble(make_config(arg_style=ARG_TRANSLATED))
        self.assertNotIn('pid ==', script)

    def test_single_pid(self):
        script = assemble(make_config(pids=[123], arg_style=ARG_TRANSLATED))
        request = clause(script, SERVER_REQUEST)
        self.assertIn('/pid == 123/', request)

    def test_multiple_pids_keep_order(self):
        script = assemble(make_config(pids=[30, 10, 20], arg_style=ARG_TRANSLATED))
        request = clause(script, SERVER_REQUEST)
        self.assertIn('/pid == 30 || pid == 10 || pid == 20/', request)

    def test_gc_start_filtered(self):
        script = assemble(make_config(gc=True, pids=[7], arg_style=ARG_TRANSLATED))
        self.assertIn('/pid == 7/', clause(script, GC_START))

    def test_response_gated_on_correlation(self):
        script = assemble(make_config(pids=[7], arg_style=ARG_TRANSLATED))
        response = clause(script, SERVER_RESPONSE)
        self.assertIn('/hs_reqstart[pid, args[0]->remoteAddress, args[0]->remotePort]/', response)
        self.assertNotIn('pid == 7', response)


class TestCorrelation(unittest.TestCase):
    """Test request/response bookkeeping."""

    def test_request_records_key(self):
        script = assemble(make_config(arg_style=ARG_TRANSLATED))
        request = clause(script, SERVER_REQUEST)
        key = 'pid, args[1]->remoteAddress, args[1]->remotePort'
        self.assertIn(f'hs_reqstart[{key}] = timestamp;', request)
        self.assertIn(f'hs_method[{key}] = args[0]->method;', request)
        self.assertIn(f'hs_url[{key}] = args[0]->url;', request)
        # one-line mode prints nothing on request
        self.assertNotIn('printf', request)

    def test_two_line_prints_request(self):
        script = assemble(make_config(two_line=True, arg_style=ARG_TRANSLATED))
        request = clause(script, SERVER_REQUEST)
        self.assertIn('printf', request)
        self.assertIn('"->"', request)
        self.assertIn('"<-"', clause(script, SERVER_RESPONSE))

    def test_response_clears_entries(self):
        script = assemble(make_config(client=True, arg_style=ARG_TRANSLATED))
        response = clause(script, CLIENT_RESPONSE)
        key = 'pid, args[0]->remoteAddress, args[0]->remotePort'
        for var in ('hs_reqstart', 'hs_method', 'hs_url'):
            self.assertIn(f'{var}[{key}] = 0;', response)
        # row printed before the entries are cleared
        self.assertLess(response.index('printf'), response.index('= 0;'))


class TestArgStyle(unittest.TestCase):
    """Test translated vs simple payload access."""

    def test_simple_never_uses_translators(self):
        script = assemble(make_config(server=True, client=True, gc=True, two_line=True,
                                      column_names=hsnoop_columns.column_names(),
                                      arg_style=ARG_SIMPLE))
        self.assertNotIn('args[', script)
        self.assertIn('copyinstr(arg2)', clause(script, SERVER_REQUEST))
        self.assertIn('copyinstr(arg1)', clause(script, CLIENT_RESPONSE))

    def test_translated_never_uses_raw_args(self):
        script = assemble(make_config(server=True, client=True, gc=True, two_line=True,
                                      column_names=hsnoop_columns.column_names(),
                                      arg_style=ARG_TRANSLATED))
        self.assertNotIn('copyinstr', script)
        self.assertIsNone(re.search(r'\barg\d', script))
        self.assertIn('args[1]->remoteAddress', clause(script, SERVER_REQUEST))


class TestScriptShape(unittest.TestCase):
    """Test overall script text."""

    def test_preamble_and_begin(self):
        script = assemble(make_config(arg_style=ARG_TRANSLATED))
        self.assertTrue(script.startswith('#!/usr/sbin/dtrace -s\n'))
        self.assertIn('#pragma D option quiet', script)
        begin = clause(script, 'BEGIN\n')
        self.assertIn('hs_start = timestamp;', begin)
        self.assertLess(begin.index('printf'), begin.index('hs_start'))
        self.assertTrue(script.endswith('}\n'))

    def test_braces_balance(self):
        script = assemble(make_config(server=True, client=True, gc=True, arg_style=ARG_SIMPLE))
        self.assertEqual(script.count('{'), script.count('}'))

    def test_invalid_column_aborts(self):
        config = make_config(column_names=['time', 'bogus'], arg_style=ARG_TRANSLATED)
        with self.assertRaises(InvalidColumnError):
            assemble(config)


if __name__ == '__main__':
    unittest.main()
