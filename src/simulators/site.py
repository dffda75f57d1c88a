#!/usr/bin/env -S python3 -B -u
"""
Site - a group of service instances sharing one address block

A site owns:
- a working directory holding its generated config and per-instance logs
- the cache, coordinator and timer instances created for it
- the cluster files those instances read

Instance n (1-based) of each kind listens on <prefix><n>. Different kinds
may share an address since each kind listens on its own port.

Directory layout:
    <dir>/cluster_settings                  cache cluster membership
    <dir>/timer/timer_cluster.conf          timer cluster membership
    <dir>/timer/timer_shared.conf           federation with other sites
    <dir>/timer/instance<n>/conf/timer.conf per-node timer config
    <dir>/timer/instance<n>/log/            per-node timer output

start(), restart() and kill() do not wait for instances to come up, so
that several sites can be started side by side. Call wait_for_instances()
before using a site.
"""

from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

from sitesim.core.config_loader import SiteSimConfig
from sitesim.core.exceptions import ValidationError
from sitesim.core.models import RoleKind, SiteState
from sitesim.core.structured_logging import get_logger
from sitesim.core.topology import DeploymentTopology, prefix_for_index
from sitesim.simulators.config_writer import (
    ensure_directory, write_config_file, remove_path,
    render_cluster_settings, render_timer_cluster,
)
from sitesim.simulators.service_roles import (
    ServiceInstance, cache_instance, coordinator_instance, timer_instance,
)

MAX_INSTANCES_PER_KIND = 254


class Site:
    """One site of a deployment and the processes running in it."""

    def __init__(self, index: int, name: str, directory: Union[str, Path],
                 deployment_topology: Optional[DeploymentTopology] = None,
                 num_cache: int = 0,
                 num_coordinator: int = 0,
                 num_timer: int = 0,
                 config: Optional[SiteSimConfig] = None,
                 verbose_level: int = 0):
        """
        Create the site directory, its config files and its instances.

        No process is started.

        Args:
            index: Site index, unique across the deployment
            name: Site name, unique across the deployment
            directory: Working directory. Removed again by close()
            deployment_topology: All sites of the deployment. When not empty
                                 it must include this site.
            num_cache: Number of cache instances
            num_coordinator: Number of coordinator instances
            num_timer: Number of timer instances
            config: Binary locations, ports and timeouts
            verbose_level: Verbosity level (0-3)

        Raises:
            TopologyError: If the topology does not include this site
            ValidationError: If an instance count is out of range
            ConfigWriteError: If a generated file cannot be written
        """
        self.index = index
        self.name = name
        self.directory = Path(directory)
        self.topology = deployment_topology or DeploymentTopology()
        self.config = config or SiteSimConfig()
        self.verbose_level = verbose_level
        self.logger = get_logger(__name__, verbose_level).bind(site=name)

        self._cache: List[ServiceInstance] = []
        self._coordinator: List[ServiceInstance] = []
        self._timer: List[ServiceInstance] = []
        self._state = SiteState.CONSTRUCTED
        self._closed = False
        self._owns_directory = False

        self._site_topology = self.topology.validate_site(name) if self.topology else None
        if self._site_topology is not None:
            self.ip_addr_prefix = self._site_topology.ip_addr_prefix
        else:
            self.ip_addr_prefix = prefix_for_index(index)

        for kind, count in ((RoleKind.CACHE, num_cache),
                            (RoleKind.COORDINATOR, num_coordinator),
                            (RoleKind.TIMER, num_timer)):
            if not isinstance(count, int) or not 0 <= count <= MAX_INSTANCES_PER_KIND:
                raise ValidationError(f"number of {kind.value} instances", count,
                                      f"be between 0 and {MAX_INSTANCES_PER_KIND}")

        ensure_directory(self.directory)
        self._owns_directory = True
        try:
            self._create_cache_instances(num_cache)
            self._create_coordinator_instances(num_coordinator)
            self._create_timer_instances(num_timer)
        except Exception:
            self.close()
            raise

        self.logger.info(f"Created site {name}", index=index, prefix=self.ip_addr_prefix,
                         cache=num_cache, coordinator=num_coordinator, timer=num_timer)

    @property
    def state(self) -> SiteState:
        return self._state

    @property
    def cluster_settings_file(self) -> Path:
        return self.directory / 'cluster_settings'

    @property
    def timer_dir(self) -> Path:
        return self.directory / 'timer'

    @property
    def timer_cluster_file(self) -> Path:
        return self.timer_dir / 'timer_cluster.conf'

    @property
    def timer_shared_file(self) -> Optional[Path]:
        """Federation file, or None for a site outside any topology."""
        if not self.topology:
            return None
        return self.timer_dir / 'timer_shared.conf'

    def site_ip(self, n: int) -> str:
        """Address of instance ``n`` (1-based) of any kind."""
        return f"{self.ip_addr_prefix}{n}"

    def _create_cache_instances(self, count: int) -> None:
        port = self.config.port(RoleKind.CACHE)
        servers = []
        for n in range(1, count + 1):
            ip = self.site_ip(n)
            self._cache.append(cache_instance(ip, port, config=self.config,
                                              verbose_level=self.verbose_level))
            servers.append((ip, port))
        write_config_file(self.cluster_settings_file, render_cluster_settings(servers))

    def _create_coordinator_instances(self, count: int) -> None:
        port = self.config.port(RoleKind.COORDINATOR)
        for n in range(1, count + 1):
            self._coordinator.append(coordinator_instance(
                self.site_ip(n), port,
                cluster_settings_file=self.cluster_settings_file,
                config=self.config,
                verbose_level=self.verbose_level,
            ))

    def _create_timer_instances(self, count: int) -> None:
        ensure_directory(self.timer_dir)

        shared_file = self.timer_shared_file
        if shared_file is not None:
            write_config_file(shared_file, self.topology.federation_lines(self.name))

        port = self.config.port(RoleKind.TIMER)
        nodes = [(self.site_ip(n), port) for n in range(1, count + 1)]
        write_config_file(self.timer_cluster_file, render_timer_cluster(nodes))

        dns_ip = dns_port = None
        if self._site_topology is not None:
            dns_ip, dns_port = self._site_topology.dns_ip, self._site_topology.dns_port

        for n, (ip, _) in enumerate(nodes, start=1):
            self._timer.append(timer_instance(
                ip, port,
                instance_dir=self.timer_dir / f"instance{n}",
                cluster_conf_file=self.timer_cluster_file,
                shared_conf_file=shared_file,
                dns_ip=dns_ip,
                dns_port=dns_port,
                config=self.config,
                verbose_level=self.verbose_level,
            ))

    def instances(self) -> Iterator[ServiceInstance]:
        """Every instance: cache, then coordinator, then timer."""
        yield from self._cache
        yield from self._coordinator
        yield from self._timer

    def _for_each_instance(self, fn: Callable[[ServiceInstance], bool]) -> bool:
        ok = True
        for instance in self.instances():
            if not fn(instance):
                ok = False
        return ok

    def start(self) -> bool:
        """Start every instance. Returns whether all of them were spawned."""
        ok = self._for_each_instance(lambda inst: inst.start())
        self._state = SiteState.STARTED
        self.logger.info(f"Started site {self.name}", ok=ok)
        return ok

    def restart(self) -> bool:
        """Restart every instance. Returns whether all of them were restarted."""
        ok = self._for_each_instance(lambda inst: inst.restart())
        self._state = SiteState.STARTED
        self.logger.info(f"Restarted site {self.name}", ok=ok)
        return ok

    def kill(self) -> bool:
        """Stop every instance. Returns whether all of them had a process to stop."""
        ok = self._for_each_instance(lambda inst: inst.stop())
        self._state = SiteState.CONSTRUCTED
        self.logger.info(f"Killed site {self.name}", ok=ok)
        return ok

    def wait_for_instances(self) -> bool:
        """
        Wait for every instance to accept connections.

        Stops at the first instance that does not come up. Use
        unready_instances() to find all of them.
        """
        for instance in self.instances():
            if not instance.wait_ready():
                self._state = SiteState.DEGRADED
                self.logger.warning(f"Site {self.name} is not ready", instance=instance.name)
                return False
        self._state = SiteState.READY
        return True

    def unready_instances(self) -> List[ServiceInstance]:
        """Every instance that does not accept connections."""
        unready = [inst for inst in self.instances() if not inst.wait_ready()]
        self._state = SiteState.DEGRADED if unready else SiteState.READY
        return unready

    def get_cache_ips(self) -> List[str]:
        return [inst.ip for inst in self._cache]

    def get_coordinator_ips(self) -> List[str]:
        return [inst.ip for inst in self._coordinator]

    def get_timer_ips(self) -> List[str]:
        return [inst.ip for inst in self._timer]

    # The get_first_* accessors return the most recently created instance.
    def get_first_cache(self) -> Optional[ServiceInstance]:
        return self._cache[-1] if self._cache else None

    def get_first_coordinator(self) -> Optional[ServiceInstance]:
        return self._coordinator[-1] if self._coordinator else None

    def get_first_timer(self) -> Optional[ServiceInstance]:
        return self._timer[-1] if self._timer else None

    def close(self, remove_files: bool = True) -> None:
        """
        Stop every instance and remove the site directory. Never raises.

        With ``remove_files=False`` the generated files are left in place.
        """
        if self._closed:
            return
        self._closed = True
        for instance in list(self.instances()):
            try:
                instance.close(remove_files=remove_files)
            except Exception as e:
                self.logger.debug(f"Ignoring error while closing {instance.name}: {e}")
        self._cache.clear()
        self._coordinator.clear()
        self._timer.clear()
        if self._owns_directory and remove_files:
            remove_path(self.directory)
        self._state = SiteState.DESTROYED

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def __repr__(self) -> str:
        return f"<Site {self.name} #{self.index} {self.ip_addr_prefix}x {self._state.value}>"
