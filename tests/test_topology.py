#!/usr/bin/env -S python3 -B -u
"""
Test Suite for Deployment Topology

This module tests address block validation, site registration, the
federation file lines and DNS record generation.
"""

import unittest

from sitesim.core.exceptions import AddressValidationError, ErrorCode, TopologyError
from sitesim.core.topology import (
    DeploymentTopology, SiteTopology, prefix_for_index, validate_prefix
)


class FakeSite:
    def __init__(self, coordinator_ips=(), timer_ips=()):
        self.coordinator_ips = list(coordinator_ips)
        self.timer_ips = list(timer_ips)

    def get_coordinator_ips(self):
        return self.coordinator_ips

    def get_timer_ips(self):
        return self.timer_ips


class TestAddressBlocks(unittest.TestCase):

    def test_prefix_for_index(self):
        self.assertEqual(prefix_for_index(1), '127.0.1.')
        self.assertEqual(prefix_for_index(254), '127.0.254.')

    def test_prefix_for_index_out_of_range(self):
        for index in (0, 255, -1, '1'):
            with self.subTest(index=index):
                with self.assertRaises(AddressValidationError) as cm:
                    prefix_for_index(index)
                self.assertEqual(cm.exception.error_code, ErrorCode.INVALID_INPUT)

    def test_validate_prefix(self):
        self.assertEqual(validate_prefix('10.1.2.'), '10.1.2.')
        for bad in ('127.0.1', '127.0.1.1.', '127.0.300.', 'a.b.c.'):
            with self.subTest(prefix=bad):
                with self.assertRaises(AddressValidationError):
                    validate_prefix(bad)

    def test_site_topology_builder(self):
        tplg = SiteTopology('127.0.1.').with_timer('timer.a').with_coordinator('coord.a')
        self.assertEqual(tplg.timer_domain, 'timer.a')
        self.assertEqual(tplg.coordinator_domain, 'coord.a')
        self.assertTrue(tplg.contains('127.0.1.7'))
        self.assertFalse(tplg.contains('127.0.2.7'))

    def test_site_topology_round_trip(self):
        tplg = SiteTopology('127.0.1.').with_timer('timer.a').with_dns('127.0.0.53', 5353)
        self.assertEqual(SiteTopology.from_dict(tplg.to_dict()), tplg)
        self.assertNotIn('coordinator_domain', tplg.to_dict())


class TestDeploymentTopology(unittest.TestCase):

    def setUp(self):
        self.topology = DeploymentTopology({
            'B': SiteTopology('127.0.2.').with_timer('timer.b').with_coordinator('coord.b'),
            'A': SiteTopology('127.0.1.').with_timer('timer.a').with_coordinator('coord.a'),
        })

    def test_mapping(self):
        self.assertEqual(len(self.topology), 2)
        self.assertEqual(set(self.topology), {'A', 'B'})
        self.assertEqual(self.topology['A'].ip_addr_prefix, '127.0.1.')

    def test_duplicate_name(self):
        with self.assertRaises(TopologyError):
            self.topology.add_site('A', SiteTopology('127.0.3.'))

    def test_shared_prefix(self):
        with self.assertRaises(TopologyError) as cm:
            self.topology.add_site('C', SiteTopology('127.0.1.'))
        self.assertIn('127.0.1.', cm.exception.message)

    def test_validate_unknown_site(self):
        with self.assertRaises(TopologyError) as cm:
            self.topology.validate_site('Z')
        self.assertEqual(cm.exception.details['available_sites'], ['A', 'B'])

    def test_remote_sites(self):
        self.assertEqual([name for name, _ in self.topology.remote_sites('A')], ['B'])

    def test_federation_lines(self):
        self.assertEqual(self.topology.federation_lines('A'), [
            '[sites]',
            'local_site = A',
            'remote_site = B=timer.b',
        ])
        self.assertEqual(self.topology.federation_lines('B'), [
            '[sites]',
            'remote_site = A=timer.a',
            'local_site = B',
        ])

    def test_federation_needs_remote_timer_domain(self):
        self.topology.add_site('C', SiteTopology('127.0.3.'))
        with self.assertRaises(TopologyError):
            self.topology.federation_lines('A')
        # The local site itself does not need a timer domain
        topology = DeploymentTopology({'C': SiteTopology('127.0.3.')})
        self.assertEqual(topology.federation_lines('C'), ['[sites]', 'local_site = C'])

    def test_dns_records(self):
        sites = {
            'A': FakeSite(coordinator_ips=['127.0.1.1', '127.0.1.2'], timer_ips=['127.0.1.1']),
            'B': FakeSite(timer_ips=['127.0.2.1']),
        }
        self.assertEqual(self.topology.dns_records(sites), {
            'coord.a': ['127.0.1.1', '127.0.1.2'],
            'timer.a': ['127.0.1.1'],
            'timer.b': ['127.0.2.1'],
        })

    def test_dns_records_unknown_site(self):
        with self.assertRaises(TopologyError):
            self.topology.dns_records({'Z': FakeSite()})

    def test_from_dict(self):
        topology = DeploymentTopology.from_dict(self.topology.to_dict())
        self.assertEqual(topology.to_dict(), self.topology.to_dict())

    def test_from_dict_requires_prefix(self):
        with self.assertRaises(TopologyError):
            DeploymentTopology.from_dict({'A': {'timer_domain': 'timer.a'}})


if __name__ == '__main__':
    unittest.main()
