#!/usr/bin/env -S python3 -B -u
"""
Deployment - every site of a test topology plus its DNS stub

A Deployment is the object a test suite (or the command line front end)
holds for the lifetime of a topology:

    with Deployment(topology, workdir, config=config) as deployment:
        deployment.add_site("site1", 1, num_cache=2, num_coordinator=2)
        deployment.add_site("site2", 2, num_cache=2, num_coordinator=2)
        deployment.start()
        deployment.ensure_ready()
        ...

Key Features:
- Sites are created in the deployment's working directory, one per name
- The DNS stub is started after the sites, with records for their
  coordinator and timer domains
- ensure_ready() raises ReadinessTimeoutError naming every instance that
  did not come up
- install_signal_cleanup() tears the deployment down on SIGINT/SIGTERM
  before letting the signal take effect, so interrupted runs do not leave
  processes behind
"""

import os
import signal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sitesim.core.config_loader import SiteSimConfig
from sitesim.core.models import RoleKind
from sitesim.core.exceptions import ReadinessTimeoutError, TopologyError, ValidationError
from sitesim.core.structured_logging import get_logger
from sitesim.core.topology import DeploymentTopology, SiteTopology, prefix_for_index
from sitesim.simulators.dns_stub import start_dns_stub
from sitesim.simulators.service_roles import ServiceInstance
from sitesim.simulators.site import Site


class Deployment:
    """Owns the sites and DNS stub of one deployment."""

    def __init__(self, topology: Optional[DeploymentTopology],
                 directory: Union[str, Path],
                 config: Optional[SiteSimConfig] = None,
                 verbose_level: int = 0):
        """
        Args:
            topology: All sites of the deployment, or None for unfederated sites
            directory: Parent directory of the site directories
            config: Binary locations, ports and timeouts shared by every site
            verbose_level: Verbosity level (0-3)
        """
        self.topology = topology or DeploymentTopology()
        self.directory = Path(directory)
        self.config = config or SiteSimConfig()
        self.verbose_level = verbose_level
        self.logger = get_logger(__name__, verbose_level)

        self.sites: Dict[str, Site] = {}
        self.dns: Optional[ServiceInstance] = None
        self.dns_address: Optional[Tuple[str, int]] = None
        self._previous_handlers: Dict[int, Any] = {}
        self._closed = False

    def add_site(self, name: str, index: int,
                 num_cache: int = 0,
                 num_coordinator: int = 0,
                 num_timer: int = 0) -> Site:
        """
        Create a site in ``<directory>/<name>``. No process is started.

        Raises:
            TopologyError: If the name or index is already used
        """
        if name in self.sites:
            raise TopologyError(f"Site '{name}' already exists in this deployment",
                                site=name, available_sites=list(self.sites))
        for other in self.sites.values():
            if other.index == index:
                raise TopologyError(f"Sites '{other.name}' and '{name}' share index {index}",
                                    site=name, available_sites=list(self.sites))

        site = Site(index, name, self.directory / name,
                    deployment_topology=self.topology,
                    num_cache=num_cache,
                    num_coordinator=num_coordinator,
                    num_timer=num_timer,
                    config=self.config,
                    verbose_level=self.verbose_level)
        self.sites[name] = site
        return site

    def start_dns(self, ip: str, port: Optional[int] = None) -> ServiceInstance:
        """
        Start the DNS stub with records for every site created so far.

        Must be called after the sites are added, since the records are
        built from their instance addresses.
        """
        if self.dns is not None:
            self.dns.close()
        records = self.topology.dns_records(self.sites) if self.topology else {}
        self.dns = start_dns_stub(ip, port, records, self.directory,
                                  config=self.config, verbose_level=self.verbose_level)
        return self.dns

    def start(self) -> bool:
        """Start every site. Returns whether every instance was spawned."""
        ok = True
        for site in self.sites.values():
            if not site.start():
                ok = False
        return ok

    def wait_for_instances(self) -> bool:
        """Wait for every site, then the DNS stub. Stops at the first failure."""
        for site in self.sites.values():
            if not site.wait_for_instances():
                return False
        if self.dns is not None and not self.dns.wait_ready():
            return False
        return True

    def unready_instances(self) -> List[ServiceInstance]:
        """Every instance of the deployment that does not accept connections."""
        unready = []
        for site in self.sites.values():
            unready.extend(site.unready_instances())
        if self.dns is not None and not self.dns.wait_ready():
            unready.append(self.dns)
        return unready

    def ensure_ready(self) -> None:
        """
        Wait for every instance.

        Raises:
            ReadinessTimeoutError: Naming every instance that did not come up
        """
        if self.wait_for_instances():
            return
        unready = self.unready_instances()
        if unready:
            raise ReadinessTimeoutError([inst.name for inst in unready])

    def install_signal_cleanup(self, signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM)) -> None:
        """Close the deployment when one of ``signals`` arrives, then re-raise it."""
        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    def _signal_handler(self, signum, frame):
        self.logger.warning(f"Caught signal {signum}, tearing down deployment")
        self.close()
        self.restore_signal_handlers()
        os.kill(os.getpid(), signum)

    def close(self, remove_files: bool = True) -> None:
        """Stop the DNS stub and every site, and remove their files. Never raises."""
        if self._closed:
            return
        self._closed = True
        if self.dns is not None:
            self.dns.close(remove_files=remove_files)
            self.dns = None
        for site in self.sites.values():
            site.close(remove_files=remove_files)
        self.sites.clear()
        self.logger.debug("Deployment closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        self.restore_signal_handlers()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], directory: Union[str, Path],
                  config: Optional[SiteSimConfig] = None,
                  verbose_level: int = 0) -> "Deployment":
        """
        Build a deployment from a topology document:

            sites:
              site1: {index: 1, timer_domain: timer.site1, cache: 2, coordinator: 2, timer: 1}
              site2: {index: 2, ip_addr_prefix: "127.0.2.", cache: 1}
            dns: {ip: 127.0.0.53, port: 5353}

        Sites without ``ip_addr_prefix`` use the block of their index. The
        DNS stub is not started; call start_dns(*deployment.dns_address).
        """
        sites = data.get('sites')
        if not isinstance(sites, Mapping) or not sites:
            raise TopologyError("Topology document has no sites")

        config = config or SiteSimConfig()
        dns = data.get('dns') or {}
        dns_ip = dns.get('ip')
        dns_port = int(dns.get('port') or config.port(RoleKind.DNS))

        topology = DeploymentTopology()
        for name, site_data in sites.items():
            site_data = site_data or {}
            if 'index' not in site_data:
                raise TopologyError(f"Site '{name}' has no index", site=name)
            tplg = SiteTopology(site_data.get('ip_addr_prefix') or prefix_for_index(site_data['index']))
            if site_data.get('timer_domain'):
                tplg.with_timer(site_data['timer_domain'])
            if site_data.get('coordinator_domain'):
                tplg.with_coordinator(site_data['coordinator_domain'])
            if dns_ip is not None:
                tplg.with_dns(dns_ip, dns_port)
            topology.add_site(name, tplg)

        deployment = cls(topology, directory, config=config, verbose_level=verbose_level)
        if dns_ip is not None:
            deployment.dns_address = (dns_ip, dns_port)
        try:
            for name, site_data in sites.items():
                site_data = site_data or {}
                deployment.add_site(name, site_data['index'],
                                    num_cache=_count(site_data, 'cache'),
                                    num_coordinator=_count(site_data, 'coordinator'),
                                    num_timer=_count(site_data, 'timer'))
        except Exception:
            deployment.close()
            raise
        return deployment


def _count(site_data: Mapping[str, Any], key: str) -> int:
    value = site_data.get(key, 0)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"number of {key} instances", value, "be a whole number")
