#!/usr/bin/env -S python3 -B -u
"""
Test Suite for Deployments

This module tests building a deployment from a topology document, the DNS
stub records, readiness errors and teardown.
"""

import signal
import tempfile
import unittest
from pathlib import Path

from sitesim.core.exceptions import ErrorCode, ReadinessTimeoutError, TopologyError, ValidationError
from sitesim.core.models import RoleKind
from sitesim.simulators.deployment import Deployment

from sitesim_test_utils import fake_config, require_loopback_block

TOPOLOGY = {
    'sites': {
        'site1': {'index': 1, 'timer_domain': 'timer.site1', 'coordinator_domain': 'coord.site1',
                  'cache': 2, 'coordinator': 1, 'timer': 1},
        'site2': {'index': 2, 'timer_domain': 'timer.site2', 'coordinator_domain': 'coord.site2',
                  'cache': 1, 'coordinator': 1, 'timer': 1},
    },
}


class DeploymentTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)
        self.config = fake_config()

    def build(self, data=TOPOLOGY, config=None):
        deployment = Deployment.from_dict(data, self.root, config=config or self.config)
        self.addCleanup(deployment.close)
        return deployment


class TestDeploymentLayout(DeploymentTestCase):

    def test_from_dict(self):
        deployment = self.build()
        self.assertEqual(list(deployment.sites), ['site1', 'site2'])
        site1 = deployment.sites['site1']
        self.assertEqual(site1.get_cache_ips(), ['127.0.1.1', '127.0.1.2'])
        self.assertEqual(deployment.sites['site2'].get_timer_ips(), ['127.0.2.1'])
        self.assertIn('remote_site = site2=timer.site2',
                      site1.timer_shared_file.read_text().splitlines())
        self.assertIsNone(deployment.dns_address)

    def test_from_dict_with_prefix_and_dns(self):
        data = {
            'sites': {'east': {'index': 3, 'ip_addr_prefix': '127.0.30.', 'timer': 1}},
            'dns': {'ip': '127.0.0.53'},
        }
        deployment = self.build(data)
        self.assertEqual(deployment.sites['east'].get_timer_ips(), ['127.0.30.1'])
        self.assertEqual(deployment.dns_address, ('127.0.0.53', self.config.port(RoleKind.DNS)))
        self.assertEqual(deployment.topology['east'].dns_ip, '127.0.0.53')

    def test_no_sites(self):
        with self.assertRaises(TopologyError):
            Deployment.from_dict({}, self.root, config=self.config)

    def test_site_without_index(self):
        with self.assertRaises(TopologyError):
            Deployment.from_dict({'sites': {'a': {'cache': 1}}}, self.root, config=self.config)

    def test_bad_count(self):
        with self.assertRaises(ValidationError):
            Deployment.from_dict({'sites': {'a': {'index': 1, 'cache': 'many'}}}, self.root,
                                 config=self.config)

    def test_duplicate_index(self):
        deployment = Deployment(None, self.root, config=self.config)
        self.addCleanup(deployment.close)
        deployment.add_site('a', 1)
        with self.assertRaises(TopologyError):
            deployment.add_site('b', 1)
        with self.assertRaises(TopologyError):
            deployment.add_site('a', 2)

    def test_close_removes_sites(self):
        deployment = self.build()
        dirs = [site.directory for site in deployment.sites.values()]
        deployment.close()
        for directory in dirs:
            self.assertFalse(directory.exists())
        self.assertEqual(deployment.sites, {})

    def test_close_can_keep_files(self):
        deployment = self.build()
        dirs = [site.directory for site in deployment.sites.values()]
        deployment.close(remove_files=False)
        for directory in dirs:
            self.assertTrue((directory / 'cluster_settings').exists())

    def test_signal_handlers_restored(self):
        deployment = self.build()
        previous = signal.getsignal(signal.SIGTERM)
        deployment.install_signal_cleanup(signals=(signal.SIGTERM,))
        self.assertNotEqual(signal.getsignal(signal.SIGTERM), previous)
        deployment.restore_signal_handlers()
        self.assertEqual(signal.getsignal(signal.SIGTERM), previous)


class TestRunningDeployment(DeploymentTestCase):

    @classmethod
    def setUpClass(cls):
        require_loopback_block()

    def test_start_with_dns(self):
        deployment = self.build()
        self.assertTrue(deployment.start())
        dns = deployment.start_dns('127.0.1.53')
        self.assertTrue(deployment.wait_for_instances())
        deployment.ensure_ready()

        cfg = self.root / f"127.0.1.53_{dns.port}_dnsmasq.cfg"
        lines = cfg.read_text().splitlines()
        self.assertIn('host-record=coord.site1,127.0.1.1', lines)
        self.assertIn('host-record=timer.site1,127.0.1.1', lines)
        self.assertIn('host-record=timer.site2,127.0.2.1', lines)

        deployment.close()
        self.assertFalse(dns.is_running())
        self.assertFalse(cfg.exists())

    def test_ensure_ready_names_unready_instances(self):
        config = fake_config(binaries={'cache': ['/nonexistent/sitesim-cache']},
                             readiness={'attempts': 3})
        deployment = self.build(config=config)
        self.assertFalse(deployment.start())
        with self.assertRaises(ReadinessTimeoutError) as cm:
            deployment.ensure_ready()
        self.assertEqual(cm.exception.error_code, ErrorCode.NOT_READY)
        names = cm.exception.details['instances']
        self.assertEqual(len(names), 3)
        self.assertTrue(all(name.startswith('cache@') for name in names))

    def test_context_manager_stops_everything(self):
        with Deployment.from_dict(TOPOLOGY, self.root, config=self.config) as deployment:
            deployment.start()
            deployment.ensure_ready()
            instances = [inst for site in deployment.sites.values() for inst in site.instances()]
        for inst in instances:
            self.assertFalse(inst.is_running())


if __name__ == '__main__':
    unittest.main()
