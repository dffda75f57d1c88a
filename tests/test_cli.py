#!/usr/bin/env -S python3 -B -u
"""
Test Suite for the Command Line Front End

This module tests the render command and the exit codes returned for bad
input.
"""

import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path
from unittest import mock

import yaml

from sitesim.cli import main
from sitesim.core.exceptions import ErrorCode


class TestRender(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)
        self.topology = self.root / 'topology.yaml'
        self.topology.write_text(yaml.safe_dump({
            'sites': {
                'site1': {'index': 1, 'timer_domain': 'timer.site1', 'cache': 2, 'timer': 1},
                'site2': {'index': 2, 'timer_domain': 'timer.site2', 'cache': 1},
            },
        }))
        self.workdir = self.root / 'work'
        patcher = mock.patch.dict(os.environ)
        patcher.start()
        self.addCleanup(patcher.stop)
        os.environ.pop('SITESIM_CONF', None)

    def run_main(self, *argv):
        out, err = StringIO(), StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_render_keep(self):
        code, out, _ = self.run_main('render', '--topology', str(self.topology),
                                     '--dir', str(self.workdir), '--keep')
        self.assertEqual(code, ErrorCode.SUCCESS)
        self.assertIn('Site site1', out)
        self.assertIn('127.0.1.2', out)
        self.assertEqual((self.workdir / 'site1' / 'cluster_settings').read_text(),
                         'servers=127.0.1.1:33333,127.0.1.2:33333\n')
        shared = (self.workdir / 'site1' / 'timer' / 'timer_shared.conf').read_text()
        self.assertIn('remote_site = site2=timer.site2', shared)

    def test_render_cleans_up(self):
        code, out, _ = self.run_main('render', '--topology', str(self.topology),
                                     '--dir', str(self.workdir))
        self.assertEqual(code, ErrorCode.SUCCESS)
        self.assertFalse((self.workdir / 'site1').exists())

    def test_missing_topology(self):
        code, _, err = self.run_main('render', '--topology', str(self.root / 'absent.yaml'),
                                     '--dir', str(self.workdir))
        self.assertEqual(code, ErrorCode.CONFIGURATION_ERROR)
        self.assertIn('Error', err)

    def test_unknown_federation_peer(self):
        self.topology.write_text(yaml.safe_dump({
            'sites': {
                'site1': {'index': 1, 'timer': 1},
                'site2': {'index': 2, 'timer': 1},
            },
        }))
        code, _, err = self.run_main('render', '--topology', str(self.topology),
                                     '--dir', str(self.workdir))
        self.assertEqual(code, ErrorCode.CONFIGURATION_ERROR)
        self.assertIn('timer domain', err)

    def test_no_command(self):
        code, out, _ = self.run_main()
        self.assertEqual(code, ErrorCode.INVALID_INPUT)
        self.assertIn('usage', out)


if __name__ == '__main__':
    unittest.main()
