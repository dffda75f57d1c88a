#!/usr/bin/env -S python3 -B -u
"""
DNS Stub - local name server for the service domains of a deployment

Timer nodes find the timer nodes of other sites by domain name. The stub
answers A queries for those domains with the addresses of the instances
that were created for them, and nothing else.

The stub is started after every Site exists, because its records are
built from the sites' instance addresses.
"""

from pathlib import Path
from typing import Dict, List, Optional, Union

from sitesim.core.config_loader import SiteSimConfig
from sitesim.core.structured_logging import get_logger
from sitesim.simulators.service_roles import ServiceInstance, dns_instance


def start_dns_stub(ip: str,
                   port: Optional[int],
                   a_records: Dict[str, List[str]],
                   directory: Union[str, Path],
                   record_style: Optional[str] = None,
                   config: Optional[SiteSimConfig] = None,
                   verbose_level: int = 0) -> ServiceInstance:
    """
    Write the stub's config and start it.

    Args:
        ip: Address the stub listens on
        port: Port the stub listens on (defaults to ports.dns)
        a_records: Mapping of domain name to the addresses it resolves to
        directory: Where the config and pid files are written
        record_style: 'host-record' or 'address' (defaults to dns.record_style)
        config: Binary location and timeouts
        verbose_level: Verbosity level (0-3)

    Returns:
        The started instance. Check is_running() or wait_ready(); a stub the
        OS refused to start is returned in the failed state.
    """
    logger = get_logger(__name__, verbose_level)
    stub = dns_instance(ip, port, a_records, directory,
                        record_style=record_style, config=config,
                        verbose_level=verbose_level)

    record_count = sum(len(addresses) for addresses in a_records.values())
    logger.info(f"Starting DNS stub {stub.name}",
                domains=len(a_records), records=record_count)
    if not stub.start():
        logger.error(f"DNS stub {stub.name} failed to start")
    return stub
