#!/usr/bin/env -S python3 -B -u
"""
Command line front end for the site simulator.

Commands:
    sitesim render --topology FILE --dir DIR [--keep]
        Create every site and write its config files without starting any
        process, then print the resulting layout.

    sitesim up --topology FILE --dir DIR
        Create and start every site (and the DNS stub, if the topology
        names one), wait for the instances to come up, print their status
        and keep them running until interrupted.
"""

import argparse
import signal
import sys
from typing import List, Optional

import colorama
from colorama import Fore, Style

from sitesim.core.config_loader import SiteSimConfig, load_sitesim_config, load_yaml_file
from sitesim.core.exceptions import ErrorCode, ErrorHandler
from sitesim.core.structured_logging import setup_logging
from sitesim.simulators.deployment import Deployment
from sitesim.simulators.service_roles import ServiceInstance

colorama.init()


def _status_line(instance: ServiceInstance, ready: Optional[bool] = None) -> str:
    if ready is None:
        status = f"{Fore.CYAN}configured{Style.RESET_ALL}"
    elif ready:
        status = f"{Fore.GREEN}ready{Style.RESET_ALL}"
    else:
        status = f"{Fore.RED}down{Style.RESET_ALL}"
    return f"  {instance.kind.value:<12} {instance.ip:<16} {instance.port:<6} {status}"


def print_layout(deployment: Deployment, unready: Optional[List[ServiceInstance]] = None) -> None:
    """Print every site with its instances and generated files."""
    for name, site in deployment.sites.items():
        print(f"{Style.BRIGHT}=== Site {name} (#{site.index}, {site.ip_addr_prefix}x) ==={Style.RESET_ALL}")
        print(f"  directory: {site.directory}")
        for instance in site.instances():
            ready = None if unready is None else instance not in unready
            print(_status_line(instance, ready))
    if deployment.dns is not None:
        ready = None if unready is None else deployment.dns not in unready
        print(f"{Style.BRIGHT}=== DNS stub ==={Style.RESET_ALL}")
        print(_status_line(deployment.dns, ready))


def _load_config(path: Optional[str]) -> SiteSimConfig:
    if path:
        return SiteSimConfig(config_path=path)
    return load_sitesim_config()


def cmd_render(args, config: SiteSimConfig) -> int:
    deployment = Deployment.from_dict(load_yaml_file(args.topology), args.dir,
                                      config=config, verbose_level=args.verbose)
    print_layout(deployment)
    deployment.close(remove_files=not args.keep)
    if args.keep:
        print(f"Config files written to {args.dir}")
    return ErrorCode.SUCCESS


def cmd_up(args, config: SiteSimConfig) -> int:
    deployment = Deployment.from_dict(load_yaml_file(args.topology), args.dir,
                                      config=config, verbose_level=args.verbose)
    with deployment:
        deployment.install_signal_cleanup(signals=(signal.SIGTERM,))
        deployment.start()
        if deployment.dns_address is not None:
            deployment.start_dns(*deployment.dns_address)

        unready = []
        if not deployment.wait_for_instances():
            unready = deployment.unready_instances()
        print_layout(deployment, unready)

        if unready:
            print(f"{Fore.RED}{len(unready)} instance(s) did not come up{Style.RESET_ALL}",
                  file=sys.stderr)
            return ErrorCode.NOT_READY

        print(f"{Fore.GREEN}All instances ready.{Style.RESET_ALL} Press Ctrl+C to stop.")
        try:
            signal.pause()
        except KeyboardInterrupt:
            print("\nStopping...")
    return ErrorCode.SUCCESS


@ErrorHandler.wrap_main
def main(argv: Optional[List[str]] = None) -> int:
    """Command-line interface for the site simulator."""
    parser = argparse.ArgumentParser(
        prog='sitesim',
        description='Multi-site process topology simulator'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    render_parser = subparsers.add_parser('render', help='Write config files without starting processes')
    render_parser.add_argument('--keep', action='store_true',
                               help='Leave the generated files in place')

    up_parser = subparsers.add_parser('up', help='Start every site and wait for it to come up')

    for sub in (render_parser, up_parser):
        sub.add_argument('--topology', required=True, help='Topology YAML file')
        sub.add_argument('--dir', required=True, help='Working directory for the sites')
        sub.add_argument('--config', help='sitesim YAML configuration file')

    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase verbosity (-v, -vv, -vvv)')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return ErrorCode.INVALID_INPUT

    setup_logging(args.verbose)
    config = _load_config(args.config)

    if args.command == 'render':
        return cmd_render(args, config)
    return cmd_up(args, config)


if __name__ == "__main__":
    sys.exit(main())
