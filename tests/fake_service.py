#!/usr/bin/env -S python3 -B -u
"""
Stand-in for the managed server binaries in tests.

Understands the command line of every role and listens on the address the
real binary would listen on, accepting and closing connections until it
is terminated:

    cache:        -l IP -p PORT -e ...
    coordinator:  --bind-addr IP --cluster-settings-file F --log-level N
                  (the coordinator has no port option; pass --port)
    timer:        --local-config-file F --cluster-config-file F [...]
                  (address and port read from the [http] section of F)
    dns:          -z -k -C CFG -x PIDFILE
                  (address and port read from CFG, pid written to PIDFILE)

--ignore-sigterm makes the process ignore SIGTERM so that the SIGKILL
fallback can be exercised.
"""

import argparse
import configparser
import os
import signal
import socket
import sys


def parse_args(argv):
    parser = argparse.ArgumentParser()
    parser.add_argument('--port', type=int)
    parser.add_argument('--ignore-sigterm', action='store_true')
    # cache
    parser.add_argument('-l')
    parser.add_argument('-p', type=int)
    parser.add_argument('-e')
    # coordinator
    parser.add_argument('--bind-addr')
    parser.add_argument('--cluster-settings-file')
    parser.add_argument('--log-level')
    # timer
    parser.add_argument('--local-config-file')
    parser.add_argument('--cluster-config-file')
    parser.add_argument('--shared-config-file')
    # dns
    parser.add_argument('-z', action='store_true')
    parser.add_argument('-k', action='store_true')
    parser.add_argument('-C')
    parser.add_argument('-x')
    return parser.parse_args(argv)


def listen_address(args):
    if args.l:
        return args.l, args.p
    if args.bind_addr:
        return args.bind_addr, args.port or 11311
    if args.local_config_file:
        conf = configparser.ConfigParser()
        conf.read(args.local_config_file)
        return conf['http']['bind-address'], int(conf['http']['bind-port'])
    if args.C:
        values = {}
        with open(args.C) as f:
            for line in f:
                key, _, value = line.strip().partition('=')
                values.setdefault(key, value)
        return values['listen-address'], int(values['port'])
    raise SystemExit("fake_service: cannot tell which role to play")


def main(argv=None):
    args = parse_args(argv if argv is not None else sys.argv[1:])
    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    ip, port = listen_address(args)
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind((ip, port))
    server.listen(16)

    if args.x:
        with open(args.x, 'w') as f:
            f.write(f"{os.getpid()}\n")

    print(f"listening on {ip}:{port}", flush=True)
    while True:
        conn, _ = server.accept()
        conn.close()


if __name__ == "__main__":
    main()
