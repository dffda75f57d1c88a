#!/usr/bin/env -S python3 -B -u
"""
Deployment topology for the site simulator.

A deployment is a set of named sites. Each site is given an IPv4 /24
address range to use, and all processes created in the site listen on
addresses in that range. This is useful for two reasons:
  - IP address management is easy, since the ranges used by different
    sites cannot clash.
  - Adverse network conditions between sites can be simulated externally
    with traffic rules keyed on the address ranges.

The topology also records the domain names at which each site's
coordinator and timer services are reachable, so that timer nodes in one
site can be federated with their peers in the others.
"""

from dataclasses import dataclass, asdict
from ipaddress import ip_address
from typing import Dict, Any, Iterator, List, Mapping, Optional, Tuple

from sitesim.core.exceptions import AddressValidationError, TopologyError, PortValidationError


def prefix_for_index(index: int) -> str:
    """Default address block prefix for a site index, e.g. 1 -> '127.0.1.'."""
    if not isinstance(index, int) or not 1 <= index <= 254:
        raise AddressValidationError(index, "be a site index between 1 and 254")
    return f"127.0.{index}."


def validate_prefix(prefix: str) -> str:
    """Check that ``prefix`` is the first three octets of an IPv4 address plus a dot."""
    if not prefix.endswith('.') or prefix.count('.') != 3:
        raise AddressValidationError(prefix, "be three IPv4 octets followed by a dot, e.g. '127.0.1.'")
    try:
        ip_address(prefix + '1')
    except ValueError as e:
        raise AddressValidationError(prefix, "be three IPv4 octets followed by a dot", cause=e)
    return prefix


@dataclass
class SiteTopology:
    """
    Externally visible topology of one site.

    Built with the builder pattern:

        SiteTopology("127.0.1.").with_timer("timer.site1").with_coordinator("coord.site1")
    """
    ip_addr_prefix: str
    coordinator_domain: Optional[str] = None
    timer_domain: Optional[str] = None
    dns_ip: Optional[str] = None
    dns_port: Optional[int] = None

    def __post_init__(self):
        validate_prefix(self.ip_addr_prefix)

    def with_timer(self, domain: str) -> "SiteTopology":
        """Set the timer service domain name."""
        self.timer_domain = domain
        return self

    def with_coordinator(self, domain: str) -> "SiteTopology":
        """Set the coordinator service domain name."""
        self.coordinator_domain = domain
        return self

    def with_dns(self, ip: str, port: int) -> "SiteTopology":
        """Set the DNS server processes in this site resolve peers through."""
        if not isinstance(port, int) or not 1 <= port <= 65535:
            raise PortValidationError(port)
        self.dns_ip = ip
        self.dns_port = port
        return self

    def contains(self, ip: str) -> bool:
        """Whether ``ip`` lies in this site's address block."""
        return ip.startswith(self.ip_addr_prefix)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SiteTopology":
        tplg = cls(
            ip_addr_prefix=data['ip_addr_prefix'],
            coordinator_domain=data.get('coordinator_domain'),
            timer_domain=data.get('timer_domain'),
        )
        if data.get('dns_ip') is not None:
            tplg.with_dns(data['dns_ip'], int(data.get('dns_port', 53)))
        return tplg


class DeploymentTopology(Mapping[str, SiteTopology]):
    """Mapping of site name to that site's topology."""

    def __init__(self, sites: Optional[Mapping[str, SiteTopology]] = None):
        self._sites: Dict[str, SiteTopology] = {}
        for name, tplg in (sites or {}).items():
            self.add_site(name, tplg)

    def add_site(self, name: str, topology: SiteTopology) -> "DeploymentTopology":
        """Add a site. Names and address blocks must be unique."""
        if name in self._sites:
            raise TopologyError(f"Site '{name}' is already in the deployment topology",
                                site=name, available_sites=list(self._sites))
        for other_name, other in self._sites.items():
            if other.ip_addr_prefix == topology.ip_addr_prefix:
                raise TopologyError(
                    f"Sites '{other_name}' and '{name}' share address block {topology.ip_addr_prefix}",
                    site=name, available_sites=list(self._sites))
        self._sites[name] = topology
        return self

    def __getitem__(self, name: str) -> SiteTopology:
        return self._sites[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._sites)

    def __len__(self) -> int:
        return len(self._sites)

    def validate_site(self, name: str) -> SiteTopology:
        """Return the topology of ``name``, or raise TopologyError if it is unknown."""
        if name not in self._sites:
            raise TopologyError(f"Site '{name}' is not in the deployment topology",
                                site=name, available_sites=list(self._sites))
        return self._sites[name]

    def remote_sites(self, name: str) -> List[Tuple[str, SiteTopology]]:
        """Every site other than ``name``, sorted by site name."""
        self.validate_site(name)
        return [(other, tplg) for other, tplg in sorted(self._sites.items()) if other != name]

    def federation_lines(self, name: str) -> List[str]:
        """
        Lines of the ``[sites]`` federation file for site ``name``.

        The local site is listed once as ``local_site``; every peer is
        listed as ``remote_site = <name>=<timer domain>``.
        """
        self.validate_site(name)
        lines = ["[sites]"]
        for site_name, tplg in sorted(self._sites.items()):
            if site_name == name:
                lines.append(f"local_site = {site_name}")
            else:
                if not tplg.timer_domain:
                    raise TopologyError(
                        f"Remote site '{site_name}' has no timer domain to federate with",
                        site=site_name, available_sites=list(self._sites))
                lines.append(f"remote_site = {site_name}={tplg.timer_domain}")
        return lines

    def dns_records(self, sites: Mapping[str, Any]) -> Dict[str, List[str]]:
        """
        Build DNS A records for the sites that have been constructed.

        Args:
            sites: Mapping of site name to Site

        Returns:
            Mapping of domain name to the addresses it should resolve to
        """
        records: Dict[str, List[str]] = {}
        for name, site in sorted(sites.items()):
            tplg = self.validate_site(name)
            if tplg.coordinator_domain and site.get_coordinator_ips():
                records.setdefault(tplg.coordinator_domain, []).extend(site.get_coordinator_ips())
            if tplg.timer_domain and site.get_timer_ips():
                records.setdefault(tplg.timer_domain, []).extend(site.get_timer_ips())
        return records

    def to_dict(self) -> Dict[str, Any]:
        return {name: tplg.to_dict() for name, tplg in self._sites.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, Any]]) -> "DeploymentTopology":
        """Create from ``{site name: {ip_addr_prefix: ..., timer_domain: ...}}``."""
        topology = cls()
        for name, site_data in data.items():
            if 'ip_addr_prefix' not in site_data:
                raise TopologyError(f"Site '{name}' has no ip_addr_prefix", site=name)
            topology.add_site(name, SiteTopology.from_dict(dict(site_data)))
        return topology
