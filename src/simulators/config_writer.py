#!/usr/bin/env -S python3 -B -u
"""
Config Writer - renders and writes the files the managed processes read

Every generated file is written once, before the process that reads it is
started. Rendering is kept separate from writing so that the formats can
be checked without touching the filesystem.

File formats:
- cache cluster settings:  servers=ip1:port1,ip2:port2,...
- timer cluster file:      [cluster] with one "node = ip:port" per node
- timer federation file:   [sites] with local_site / remote_site lines
- timer local config:      [logging] [http] [throttling] [cluster] [dns]
- DNS stub config:         listen-address= / port= and one record per address
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from sitesim.core.exceptions import ConfigWriteError

PathLike = Union[str, Path]


def ensure_directory(path: PathLike) -> Path:
    """Create ``path`` (and parents) if missing."""
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigWriteError(str(path), e.strerror or str(e), cause=e)
    return path


def write_config_file(path: PathLike, lines: Sequence[str]) -> Path:
    """
    Write ``lines`` to ``path``, replacing any existing file atomically.

    Raises:
        ConfigWriteError: If the file cannot be written
    """
    path = Path(path)
    content = "".join(f"{line}\n" for line in lines)
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(content)
            os.chmod(tmp_name, _created_file_mode())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise ConfigWriteError(str(path), e.strerror or str(e), cause=e)
    return path


def _created_file_mode() -> int:
    """Mode an ordinary open() would give a new file under the current umask."""
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def remove_path(path: Optional[PathLike]) -> bool:
    """Remove a file or directory tree. Missing paths are not an error."""
    if not path:
        return False
    path = Path(path)
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError:
        return False


def render_cluster_settings(servers: Sequence[Tuple[str, int]]) -> List[str]:
    """Cache cluster settings: a single servers= line, or nothing for an empty cluster."""
    if not servers:
        return []
    return ["servers=" + ",".join(f"{ip}:{port}" for ip, port in servers)]


def render_timer_cluster(nodes: Sequence[Tuple[str, int]]) -> List[str]:
    """Timer cluster membership, shared by every timer node in a site."""
    return ["[cluster]"] + [f"node = {ip}:{port}" for ip, port in nodes]


def render_timer_local_config(ip: str,
                              port: int,
                              log_dir: str,
                              log_level: int,
                              max_tokens: int = 1000,
                              dns_ip: Optional[str] = None,
                              dns_port: Optional[int] = None) -> List[str]:
    """Per-node timer configuration."""
    lines = [
        "[logging]",
        f"level = {log_level}",
        f"folder = {log_dir}",
        "",
        "[http]",
        f"bind-address = {ip}",
        f"bind-port = {port}",
        "",
        "[throttling]",
        f"max_tokens = {max_tokens}",
        "",
        "[cluster]",
        f"localhost = {ip}:{port}",
    ]
    if dns_ip:
        lines += [
            "",
            "[dns]",
            f"servers = {dns_ip}:{dns_port or 53}",
        ]
    return lines


def render_dns_config(ip: str,
                      port: int,
                      a_records: Dict[str, List[str]],
                      record_style: str = "host-record") -> List[str]:
    """
    DNS stub configuration.

    ``record_style`` selects between ``host-record=<domain>,<ip>`` and
    ``address=/<domain>/<ip>`` lines; either way there is one line per
    domain/address pair.
    """
    lines = [f"listen-address={ip}", f"port={port}"]
    for domain, addresses in a_records.items():
        for address in addresses:
            if record_style == "address":
                lines.append(f"address=/{domain}/{address}")
            else:
                lines.append(f"host-record={domain},{address}")
    return lines
