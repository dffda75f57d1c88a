#!/usr/bin/env -S python3 -B -u
"""
Service Roles - launch commands for each kind of managed server

Each supported server binary is a role. A role decides:
- the command line the process is started with
- the config files written before the process is first started
- where the process writes its output
- which files are removed again when the instance is closed

Roles form a closed set (RoleKind) and every role has exactly one entry in
LAUNCH_BUILDERS. The factory functions below are the supported way to
create instances; they write any per-instance files up front so that a
constructed instance can be started, stopped and restarted repeatedly.
"""

from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sitesim.core.config_loader import SiteSimConfig, get_log_level
from sitesim.core.models import RoleKind
from sitesim.simulators.config_writer import (
    ensure_directory, write_config_file, remove_path,
    render_timer_local_config, render_dns_config,
)
from sitesim.simulators.process_instance import (
    ProcessInstance, LaunchSpec, terminate_pidfile_process,
)

PathLike = Union[str, Path]


class ServiceInstance(ProcessInstance):
    """A ProcessInstance whose command line is chosen by its role."""

    def __init__(self, kind: RoleKind, ip: str, port: int,
                 settings: Optional[Dict[str, Any]] = None,
                 config: Optional[SiteSimConfig] = None,
                 owned_paths: Iterable[PathLike] = (),
                 verbose_level: int = 0):
        """
        Args:
            kind: Role of this instance
            ip: Address the process binds to
            port: Port the process listens on
            settings: Role-specific values used to build the command line
            config: Binary locations, readiness and stop settings
            owned_paths: Files or directories removed when the instance closes
            verbose_level: Verbosity level (0-3)
        """
        self.kind = RoleKind(kind)
        self.config = config or SiteSimConfig()
        self.settings = dict(settings or {})
        self._owned_paths = [Path(p) for p in owned_paths]
        self._files_removed = False
        super().__init__(ip, port,
                         readiness=self.config.readiness,
                         stop_timeout=self.config.stop_timeout,
                         verbose_level=verbose_level)

    @property
    def name(self) -> str:
        return f"{self.kind.value}@{self.ip}:{self.port}"

    def launch_spec(self) -> LaunchSpec:
        return LAUNCH_BUILDERS[self.kind](self)

    def prepare_start(self) -> None:
        pid_file = self.settings.get('pid_file')
        if pid_file:
            terminate_pidfile_process(str(pid_file), timeout=self.stop_timeout,
                                      binary=self.config.binary(self.kind)[0])

    def close(self, remove_files: bool = True) -> None:
        """Force-stop the process, then remove the files this instance owns."""
        super().close()
        if not remove_files or self._files_removed:
            return
        self._files_removed = True
        for path in self._owned_paths:
            if remove_path(path):
                self.logger.debug(f"Removed {path}", instance=self.name)


def _cache_launch(instance: ServiceInstance) -> LaunchSpec:
    return LaunchSpec(argv=instance.config.binary(RoleKind.CACHE) + [
        '-l', instance.ip,
        '-p', str(instance.port),
        '-e', 'ignore_vbucket=true',
    ])


def _coordinator_launch(instance: ServiceInstance) -> LaunchSpec:
    return LaunchSpec(argv=instance.config.binary(RoleKind.COORDINATOR) + [
        '--bind-addr', instance.ip,
        '--cluster-settings-file', str(instance.settings['cluster_settings_file']),
        '--log-level', str(get_log_level()),
    ])


def _timer_launch(instance: ServiceInstance) -> LaunchSpec:
    settings = instance.settings
    argv = instance.config.binary(RoleKind.TIMER) + [
        '--local-config-file', str(settings['local_conf_file']),
        '--cluster-config-file', str(settings['cluster_conf_file']),
    ]
    if settings.get('shared_conf_file'):
        argv += ['--shared-config-file', str(settings['shared_conf_file'])]

    log_dir = Path(settings['log_dir'])
    return LaunchSpec(
        argv=argv,
        stdout_path=str(log_dir / 'timer_stdout.txt'),
        stderr_path=str(log_dir / 'timer_stderr.txt'),
    )


def _dns_launch(instance: ServiceInstance) -> LaunchSpec:
    return LaunchSpec(argv=instance.config.binary(RoleKind.DNS) + [
        '-z', '-k',
        '-C', str(instance.settings['conf_file']),
        '-x', str(instance.settings['pid_file']),
    ])


LAUNCH_BUILDERS: Dict[RoleKind, Callable[[ServiceInstance], LaunchSpec]] = {
    RoleKind.CACHE: _cache_launch,
    RoleKind.COORDINATOR: _coordinator_launch,
    RoleKind.TIMER: _timer_launch,
    RoleKind.DNS: _dns_launch,
}


def cache_instance(ip: str, port: Optional[int] = None,
                   config: Optional[SiteSimConfig] = None,
                   verbose_level: int = 0) -> ServiceInstance:
    """Cache node. Needs no files of its own."""
    config = config or SiteSimConfig()
    return ServiceInstance(RoleKind.CACHE, ip, port or config.port(RoleKind.CACHE),
                           config=config, verbose_level=verbose_level)


def coordinator_instance(ip: str, port: Optional[int] = None,
                         cluster_settings_file: PathLike = 'cluster_settings',
                         config: Optional[SiteSimConfig] = None,
                         verbose_level: int = 0) -> ServiceInstance:
    """Coordinator node, pointed at its site's cache cluster settings file."""
    config = config or SiteSimConfig()
    return ServiceInstance(RoleKind.COORDINATOR, ip, port or config.port(RoleKind.COORDINATOR),
                           settings={'cluster_settings_file': str(cluster_settings_file)},
                           config=config, verbose_level=verbose_level)


def timer_instance(ip: str, port: Optional[int],
                   instance_dir: PathLike,
                   cluster_conf_file: PathLike,
                   shared_conf_file: Optional[PathLike] = None,
                   dns_ip: Optional[str] = None,
                   dns_port: Optional[int] = None,
                   config: Optional[SiteSimConfig] = None,
                   verbose_level: int = 0) -> ServiceInstance:
    """
    Timer node.

    Creates ``instance_dir/log`` and ``instance_dir/conf`` and writes the
    node's local config to ``conf/timer.conf``. The cluster and federation
    files are shared by the site and passed in by path. The whole instance
    directory is removed when the instance is closed.

    Raises:
        ConfigWriteError: If the directories or config file cannot be written
    """
    config = config or SiteSimConfig()
    port = port or config.port(RoleKind.TIMER)
    instance_dir = Path(instance_dir)
    log_dir = ensure_directory(instance_dir / 'log')
    conf_dir = ensure_directory(instance_dir / 'conf')

    local_conf_file = conf_dir / 'timer.conf'
    write_config_file(local_conf_file, render_timer_local_config(
        ip, port,
        log_dir=str(log_dir.resolve()),
        log_level=get_log_level(),
        max_tokens=config.timer_max_tokens,
        dns_ip=dns_ip,
        dns_port=dns_port,
    ))

    settings = {
        'local_conf_file': str(local_conf_file),
        'cluster_conf_file': str(cluster_conf_file),
        'shared_conf_file': str(shared_conf_file) if shared_conf_file else None,
        'log_dir': str(log_dir),
    }
    return ServiceInstance(RoleKind.TIMER, ip, port, settings=settings, config=config,
                           owned_paths=[instance_dir], verbose_level=verbose_level)


def dns_instance(ip: str, port: Optional[int],
                 a_records: Dict[str, List[str]],
                 directory: PathLike,
                 record_style: Optional[str] = None,
                 config: Optional[SiteSimConfig] = None,
                 verbose_level: int = 0) -> ServiceInstance:
    """
    DNS stub resolving every domain in ``a_records`` to its addresses.

    Writes ``<ip>_<port>_dnsmasq.cfg`` into ``directory``. The process
    records its pid in ``<ip>_<port>_dnsmasq.pid`` beside it; a process
    still named there from an earlier run is terminated before each start.
    Both files are removed when the instance is closed.

    Raises:
        ConfigWriteError: If the config file cannot be written
    """
    config = config or SiteSimConfig()
    port = port or config.port(RoleKind.DNS)
    directory = ensure_directory(directory)

    conf_file = directory / f"{ip}_{port}_dnsmasq.cfg"
    pid_file = directory / f"{ip}_{port}_dnsmasq.pid"
    write_config_file(conf_file, render_dns_config(
        ip, port, a_records, record_style or config.dns_record_style))

    return ServiceInstance(RoleKind.DNS, ip, port,
                           settings={'conf_file': str(conf_file), 'pid_file': str(pid_file)},
                           config=config, owned_paths=[conf_file, pid_file],
                           verbose_level=verbose_level)
